"""Persistent completion tracker (the State Store).

Contract::

    check(key) -> bool     # False for missing records, always False in force mode
    set(key)               # idempotent, durable, atomic

Two implementations share the :class:`StateStore` interface:

* :class:`FileStateStore` — one JSON marker file per key under
  ``<state_dir>/completed/``.  Production default.
* :class:`MemoryStateStore` — dict-backed, for tests and dry runs.

On-disk layout::

    <state_dir>/
      completed/<key>.json      # StepRecord, '/' in keys encoded as '~'
      values/<key>              # small string values
      resume.json               # ResumePoint after a reboot checkpoint
      run.lock                  # see provisioner.state.lock

Every write goes through :func:`atomic_write_text` (temp file + fsync +
rename), so an interrupted process leaves either the previous record or
the new one.  Write failures raise :class:`StateCorruption`.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from provisioner.errors import StateCorruption
from provisioner.state.keys import KEY_SEPARATOR, validate_key
from provisioner.state.models import ResumePoint, StepRecord

logger = logging.getLogger(__name__)

_ENCODED_SEPARATOR = "~"


# ---------------------------------------------------------------------------
# Atomic file helpers
# ---------------------------------------------------------------------------


def atomic_write_text(path: Path, text: str) -> None:
    """Write *text* to *path* atomically (temp file in the same dir + rename).

    Raises :class:`StateCorruption` on any filesystem error.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}-", suffix=".tmp",
        )
    except OSError as exc:
        raise StateCorruption(f"Cannot write state ({exc.strerror})", path=str(path)) from exc

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(temp_path, path)
    except OSError as exc:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise StateCorruption(f"Cannot write state ({exc.strerror})", path=str(path)) from exc


def read_text_or_none(path: Path) -> Optional[str]:
    """Return file contents, ``None`` if absent; raise :class:`StateCorruption` if unreadable."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StateCorruption(f"Cannot read state ({exc.strerror})", path=str(path)) from exc


def encode_key(key: str) -> str:
    """Map a completion key to a flat file name."""
    return validate_key(key).replace(KEY_SEPARATOR, _ENCODED_SEPARATOR)


def decode_key(name: str) -> str:
    """Inverse of :func:`encode_key`."""
    return name.replace(_ENCODED_SEPARATOR, KEY_SEPARATOR)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class StateStore(ABC):
    """Completion ledger shared by the Runner and the units.

    *force* is the run-wide ForceMode: ``check`` reports every key as
    pending while ``set`` keeps recording completions durably.
    """

    def __init__(self, *, force: bool = False) -> None:
        self.force = force

    # -- completion flags ---------------------------------------------------

    def check(self, key: str) -> bool:
        """True if *key* was recorded complete and force mode is off."""
        key = validate_key(key)
        if self.force:
            return False
        record = self.get_record(key)
        return record is not None and record.completed

    def set(self, key: str, *, fingerprint: Optional[str] = None) -> StepRecord:
        """Record *key* as complete.  Safe to call repeatedly."""
        record = StepRecord(key=validate_key(key), fingerprint=fingerprint)
        self._write_record(record)
        logger.debug("Marked %s as completed", key)
        return record

    @abstractmethod
    def get_record(self, key: str) -> Optional[StepRecord]:
        """Return the stored record for *key* regardless of force mode."""

    @abstractmethod
    def _write_record(self, record: StepRecord) -> None: ...

    @abstractmethod
    def reset(self, key: str) -> bool:
        """Delete the record for *key*.  Returns True if one existed."""

    @abstractmethod
    def keys(self) -> List[str]:
        """All recorded keys, sorted."""

    def reset_prefix(self, prefix: str) -> List[str]:
        """Delete every record whose key is *prefix* or lives under ``prefix/``."""
        removed = [
            k for k in self.keys()
            if k == prefix or k.startswith(prefix + KEY_SEPARATOR)
        ]
        for key in removed:
            self.reset(key)
        return removed

    # -- values ---------------------------------------------------------------

    @abstractmethod
    def set_value(self, key: str, value: str) -> None:
        """Store a small string value under *key*."""

    @abstractmethod
    def get_value(self, key: str, default: str = "") -> str:
        """Return the stored value for *key*, or *default*."""

    @abstractmethod
    def has_value(self, key: str) -> bool: ...

    # -- resume point ---------------------------------------------------------

    @abstractmethod
    def save_resume_point(self, point: ResumePoint) -> None: ...

    @abstractmethod
    def load_resume_point(self) -> Optional[ResumePoint]: ...

    @abstractmethod
    def clear_resume_point(self) -> None: ...


# ---------------------------------------------------------------------------
# File-backed store
# ---------------------------------------------------------------------------


class FileStateStore(StateStore):
    """Directory-of-marker-files implementation."""

    def __init__(self, root: str | Path, *, force: bool = False) -> None:
        super().__init__(force=force)
        self.root = Path(root)
        self.completed_dir = self.root / "completed"
        self.values_dir = self.root / "values"
        self.resume_path = self.root / "resume.json"

    def initialize(self) -> None:
        """Create the state directories.  Raises :class:`StateCorruption` on failure."""
        try:
            self.completed_dir.mkdir(parents=True, exist_ok=True)
            self.values_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StateCorruption(
                f"Cannot create state directory ({exc.strerror})", path=str(self.root),
            ) from exc

    def _record_path(self, key: str) -> Path:
        return self.completed_dir / f"{encode_key(key)}.json"

    def get_record(self, key: str) -> Optional[StepRecord]:
        path = self._record_path(key)
        text = read_text_or_none(path)
        if text is None:
            return None
        try:
            return StepRecord.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise StateCorruption(f"Unparseable state record ({exc})", path=str(path)) from exc

    def _write_record(self, record: StepRecord) -> None:
        atomic_write_text(self._record_path(record.key), record.to_sorted_json() + "\n")

    def reset(self, key: str) -> bool:
        path = self._record_path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug("Step %s was not marked as completed, nothing to reset", key)
            return False
        except OSError as exc:
            raise StateCorruption(f"Cannot reset state ({exc.strerror})", path=str(path)) from exc
        logger.debug("Reset step %s", key)
        return True

    def keys(self) -> List[str]:
        if not self.completed_dir.is_dir():
            return []
        return sorted(
            decode_key(p.stem)
            for p in self.completed_dir.glob("*.json")
            if not p.name.startswith(".")
        )

    def _value_path(self, key: str) -> Path:
        return self.values_dir / encode_key(key)

    def set_value(self, key: str, value: str) -> None:
        atomic_write_text(self._value_path(key), value)
        logger.debug("Stored value for %s", key)

    def get_value(self, key: str, default: str = "") -> str:
        text = read_text_or_none(self._value_path(key))
        return default if text is None else text

    def has_value(self, key: str) -> bool:
        return self._value_path(key).is_file()

    def save_resume_point(self, point: ResumePoint) -> None:
        atomic_write_text(self.resume_path, point.to_sorted_json() + "\n")
        logger.info("Saved resume point: phase=%s next=%s", point.phase, point.next_unit)

    def load_resume_point(self) -> Optional[ResumePoint]:
        text = read_text_or_none(self.resume_path)
        if text is None:
            return None
        try:
            return ResumePoint.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise StateCorruption(
                f"Unparseable resume point ({exc})", path=str(self.resume_path),
            ) from exc

    def clear_resume_point(self) -> None:
        try:
            self.resume_path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StateCorruption(
                f"Cannot clear resume point ({exc.strerror})", path=str(self.resume_path),
            ) from exc


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class MemoryStateStore(StateStore):
    """Dict-backed store for tests and dry runs."""

    def __init__(self, *, force: bool = False) -> None:
        super().__init__(force=force)
        self.records: Dict[str, StepRecord] = {}
        self.values: Dict[str, str] = {}
        self.resume_point: Optional[ResumePoint] = None

    def get_record(self, key: str) -> Optional[StepRecord]:
        return self.records.get(validate_key(key))

    def _write_record(self, record: StepRecord) -> None:
        self.records[record.key] = record

    def reset(self, key: str) -> bool:
        return self.records.pop(validate_key(key), None) is not None

    def keys(self) -> List[str]:
        return sorted(self.records)

    def set_value(self, key: str, value: str) -> None:
        self.values[validate_key(key)] = value

    def get_value(self, key: str, default: str = "") -> str:
        return self.values.get(validate_key(key), default)

    def has_value(self, key: str) -> bool:
        return validate_key(key) in self.values

    def save_resume_point(self, point: ResumePoint) -> None:
        self.resume_point = point

    def load_resume_point(self) -> Optional[ResumePoint]:
        return self.resume_point

    def clear_resume_point(self) -> None:
        self.resume_point = None
