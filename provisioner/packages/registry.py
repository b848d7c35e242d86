"""Package registry and install coordinator.

Many units declare overlapping package lists.  The registry remembers,
per package name, whether an install was requested, succeeded, or
failed, so a package is handed to the package manager once across all
units and across re-runs.

Registry layout (file-backed)::

    <state_dir>/packages/<name>.json    # PackageRecord

Category is metadata only (used for reporting), never identity.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, ValidationError

from provisioner.errors import CollaboratorError, StateCorruption
from provisioner.packages.apt import PackageManager
from provisioner.state.models import utc_now_iso
from provisioner.state.store import atomic_write_text, read_text_or_none

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Categories (lower number = listed first)
# ---------------------------------------------------------------------------

PACKAGE_CATEGORIES: Dict[str, int] = {
    "core": 10,
    "essential": 20,
    "development": 30,
    "utilities": 40,
    "network": 50,
    "desktop": 60,
    "multimedia": 70,
    "browsers": 80,
    "productivity": 90,
    "other": 100,
}

DEFAULT_CATEGORY = "other"

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9+._:-]*$")


def normalize_category(category: str) -> str:
    """Return *category* if known, else ``other`` (with a warning)."""
    if category in PACKAGE_CATEGORIES:
        return category
    logger.warning("Unknown package category: %s, defaulting to '%s'", category, DEFAULT_CATEGORY)
    return DEFAULT_CATEGORY


def validate_package_names(names: Iterable[str]) -> List[str]:
    """Validate and de-duplicate *names*, preserving first-seen order."""
    seen: List[str] = []
    for name in names:
        if not isinstance(name, str) or not _NAME_PATTERN.match(name):
            raise ValueError(f"Invalid package name: {name!r}")
        if name not in seen:
            seen.append(name)
    return seen


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class PackageStatus(str, Enum):
    """Lifecycle of a package request."""

    REQUESTED = "Requested"
    INSTALLED = "Installed"
    FAILED = "Failed"


class PackageRecord(BaseModel):
    """Registry entry for one package name."""

    name: str
    category: str = DEFAULT_CATEGORY
    status: PackageStatus = PackageStatus.REQUESTED
    updated_at: str = Field(default_factory=utc_now_iso)


# ---------------------------------------------------------------------------
# Registry storage
# ---------------------------------------------------------------------------


class PackageRegistry(ABC):
    """Storage for :class:`PackageRecord` keyed by package name."""

    @abstractmethod
    def get(self, name: str) -> Optional[PackageRecord]: ...

    @abstractmethod
    def put(self, record: PackageRecord) -> None: ...

    @abstractmethod
    def records(self) -> List[PackageRecord]: ...


class FilePackageRegistry(PackageRegistry):
    """One JSON file per package under ``<state_dir>/packages``."""

    def __init__(self, state_dir: str | Path) -> None:
        self.root = Path(state_dir) / "packages"

    def _path(self, name: str) -> Path:
        return self.root / f"{name}.json"

    def get(self, name: str) -> Optional[PackageRecord]:
        path = self._path(name)
        text = read_text_or_none(path)
        if text is None:
            return None
        try:
            return PackageRecord.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise StateCorruption(f"Unparseable package record ({exc})", path=str(path)) from exc

    def put(self, record: PackageRecord) -> None:
        payload = json.dumps(record.model_dump(mode="json"), indent=2, sort_keys=True)
        atomic_write_text(self._path(record.name), payload + "\n")

    def records(self) -> List[PackageRecord]:
        if not self.root.is_dir():
            return []
        found: List[PackageRecord] = []
        for path in sorted(self.root.glob("*.json")):
            if path.name.startswith("."):
                continue
            record = self.get(path.stem)
            if record is not None:
                found.append(record)
        return found


class MemoryPackageRegistry(PackageRegistry):
    """Dict-backed registry for tests."""

    def __init__(self) -> None:
        self.entries: Dict[str, PackageRecord] = {}

    def get(self, name: str) -> Optional[PackageRecord]:
        return self.entries.get(name)

    def put(self, record: PackageRecord) -> None:
        self.entries[record.name] = record

    def records(self) -> List[PackageRecord]:
        return [self.entries[k] for k in sorted(self.entries)]


# ---------------------------------------------------------------------------
# Install coordinator
# ---------------------------------------------------------------------------


class InstallCoordinator:
    """Deduplicates install requests across units.

    No automatic retry: a failed install is recorded as ``Failed`` and
    reported; the next run (typically with ``--force``) tries again.
    """

    def __init__(
        self,
        registry: PackageRegistry,
        manager: PackageManager,
        *,
        refresh_index: bool = True,
    ) -> None:
        self.registry = registry
        self.manager = manager
        self._needs_refresh = refresh_index
        self._refreshed = False

    @property
    def index_refreshed(self) -> bool:
        """True once this coordinator has asked the manager to refresh its index."""
        return self._refreshed

    def is_installed(self, name: str) -> bool:
        record = self.registry.get(name)
        return record is not None and record.status == PackageStatus.INSTALLED

    def _mark(self, names: Sequence[str], category: str, status: PackageStatus) -> None:
        for name in names:
            self.registry.put(PackageRecord(name=name, category=category, status=status))

    def register(self, category: str, names: Sequence[str]) -> List[str]:
        """Record *names* as installed without calling the package manager.

        Returns the names that were newly registered.
        """
        category = normalize_category(category)
        added: List[str] = []
        for name in validate_package_names(names):
            if self.is_installed(name):
                logger.debug("Package '%s' already registered", name)
                continue
            self._mark([name], category, PackageStatus.INSTALLED)
            added.append(name)
            logger.debug("Registered package '%s' in category '%s'", name, category)
        return added

    def install_if_needed(self, category: str, names: Sequence[str]) -> bool:
        """Install every name not yet ``Installed``.

        Returns True only if every requested package ends ``Installed``.
        """
        category = normalize_category(category)
        requested = validate_package_names(names)
        pending = [n for n in requested if not self.is_installed(n)]
        for name in requested:
            if name not in pending:
                logger.info("Package '%s' is already installed. Skipping...", name)

        probe = self.manager.is_installed
        if probe is not None and pending:
            present = [n for n in pending if probe(n)]
            if present:
                logger.info("Already present on the system: %s", " ".join(present))
                self._mark(present, category, PackageStatus.INSTALLED)
                pending = [n for n in pending if n not in present]

        if not pending:
            logger.info("No packages need to be installed in category '%s'", category)
            return True

        self._mark(pending, category, PackageStatus.REQUESTED)

        if self._needs_refresh:
            self._needs_refresh = False
            self._refreshed = True
            if not self.manager.refresh_index():
                logger.warning("Package index refresh failed; installing from the current index")

        logger.info("Installing %d packages in category '%s'", len(pending), category)
        try:
            ok = self.manager.install(pending)
        except (CollaboratorError, OSError) as exc:
            logger.error("Package manager error: %s", exc)
            ok = False

        if ok:
            self._mark(pending, category, PackageStatus.INSTALLED)
            return True

        self._mark(pending, category, PackageStatus.FAILED)
        logger.error(
            "Failed to install some packages in category '%s': %s",
            category, " ".join(pending),
        )
        return False

    def failed_packages(self) -> List[str]:
        return [r.name for r in self.registry.records() if r.status == PackageStatus.FAILED]

    def report_by_category(self) -> List[Tuple[str, List[str]]]:
        """Installed package names grouped by category, in category priority order."""
        grouped: Dict[str, List[str]] = {}
        for record in self.registry.records():
            if record.status != PackageStatus.INSTALLED:
                continue
            grouped.setdefault(record.category, []).append(record.name)
        order = sorted(grouped, key=lambda c: (PACKAGE_CATEGORIES.get(c, 1000), c))
        return [(cat, sorted(grouped[cat])) for cat in order]
