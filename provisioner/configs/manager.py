"""Configuration Lifecycle Manager.

Keeps configuration files in a version-controlled repository and
replaces the live copies with symlinks into it.  Repository layout::

    <config_repo>/<component>/<basename of live path>

A live path is always in one of three states:

* absent
* a symlink to its repository counterpart
* a plain file pending capture

Operations (each takes ``(component, paths)``):

``restore``  tracked copy exists → back up a plain live file to
             ``<path>.orig.<YYYYMMDD-HHMMSS>`` and symlink into the repo.
``capture``  live plain file, no tracked copy → copy into the repo and
             swap the live file for a symlink.
``sync``     restore if tracked, else capture if live.

Newly captured files are committed in one commit per call.  A failed
commit is a warning: the files are already safe on disk and the next
commit for the same component picks them up.  A missing repository root
is fatal.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Sequence

from provisioner.configs.git import VersionControl
from provisioner.errors import ConfigurationError
from provisioner.state.keys import KEY_PATTERN

logger = logging.getLogger(__name__)

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class ConfigOrigin(str, Enum):
    """Where the tracked copy came from."""

    PREEXISTING = "Preexisting"
    GENERATED = "Generated"


class LiveState(str, Enum):
    """Observed state of a live path relative to its tracked copy."""

    ABSENT = "absent"
    LINKED = "linked"
    PLAIN = "plain"
    FOREIGN_LINK = "foreign-link"


@dataclass
class ConfigFileEntry:
    """One live path and its repository counterpart."""

    live_location: Path
    repo_location: Path
    origin: ConfigOrigin


@dataclass
class ConfigResult:
    """What one restore/capture/sync call did."""

    component: str
    entries: List[ConfigFileEntry] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    backups: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    committed: bool = False
    commit_error: str = ""

    @property
    def changed(self) -> bool:
        return bool(self.added)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ConfigLifecycleManager:
    """Moves configuration files into the tracked repository and symlinks them back."""

    def __init__(
        self,
        repo_root: str | Path,
        vcs: VersionControl,
        *,
        dry_run: bool = False,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.repo_root = Path(repo_root).expanduser().resolve()
        self.vcs = vcs
        self.dry_run = dry_run
        self._clock = clock

    # -- helpers --------------------------------------------------------------

    def _ensure_repo(self) -> None:
        if not self.repo_root.is_dir():
            raise ConfigurationError(
                f"Configuration repository not found at {self.repo_root}; "
                "mount or clone it before provisioning"
            )

    @staticmethod
    def _validate_component(component: str) -> str:
        if not component or "/" in component or not KEY_PATTERN.match(component):
            raise ConfigurationError(f"Invalid component name: {component!r}")
        return component

    def repo_path(self, component: str, live: str | Path) -> Path:
        """Repository location for *live* under *component*."""
        return self.repo_root / self._validate_component(component) / Path(live).name

    @staticmethod
    def live_state(live: Path, repo_path: Path) -> LiveState:
        """Classify *live* against *repo_path*."""
        if live.is_symlink():
            target = Path(os.readlink(live))
            if not target.is_absolute():
                target = live.parent / target
            if os.path.abspath(target) == os.path.abspath(repo_path):
                return LiveState.LINKED
            return LiveState.FOREIGN_LINK
        if live.exists():
            return LiveState.PLAIN
        return LiveState.ABSENT

    def backup_path(self, live: Path) -> Path:
        """``<live>.orig.<timestamp>``, suffixed ``-N`` if that name is taken."""
        stamp = self._clock().strftime(BACKUP_TIMESTAMP_FORMAT)
        candidate = live.with_name(f"{live.name}.orig.{stamp}")
        n = 1
        while candidate.exists() or candidate.is_symlink():
            candidate = live.with_name(f"{live.name}.orig.{stamp}-{n}")
            n += 1
        return candidate

    @staticmethod
    def _symlink_over(live: Path, target: Path) -> None:
        """Atomically make *live* a symlink to *target* (replacing any link/file)."""
        live.parent.mkdir(parents=True, exist_ok=True)
        tmp = live.with_name(f".{live.name}.provisioner-link")
        if tmp.is_symlink() or tmp.exists():
            tmp.unlink()
        os.symlink(target, tmp)
        os.replace(tmp, live)

    @staticmethod
    def _iter_paths(paths: Sequence[str | Path]) -> List[Path]:
        return [Path(p).expanduser() for p in paths if str(p)]

    # -- single-path transitions ---------------------------------------------

    def _restore_one(self, component: str, live: Path, result: ConfigResult) -> bool:
        tracked = self.repo_path(component, live)
        if not (tracked.exists() or tracked.is_symlink()):
            return False

        state = self.live_state(live, tracked)
        entry = ConfigFileEntry(live, tracked, ConfigOrigin.PREEXISTING)
        if state == LiveState.LINKED:
            logger.debug("Already linked: %s -> %s", live, tracked)
            result.entries.append(entry)
            return True

        if self.dry_run:
            logger.info("[DRY RUN] Would link %s -> %s", live, tracked)
            result.entries.append(entry)
            return True

        if state == LiveState.PLAIN:
            backup = self.backup_path(live)
            logger.info("Backing up existing config: %s -> %s", live, backup)
            os.replace(live, backup)
            result.backups.append(backup)
        elif state == LiveState.FOREIGN_LINK:
            logger.info("Replacing existing symlink: %s", live)

        logger.info("Creating symlink: %s -> %s", live, tracked)
        self._symlink_over(live, tracked)
        result.entries.append(entry)
        return True

    def _capture_one(self, component: str, live: Path, result: ConfigResult) -> bool:
        tracked = self.repo_path(component, live)
        if tracked.exists() or tracked.is_symlink():
            logger.debug("Already tracked: %s", tracked)
            return False

        state = self.live_state(live, tracked)
        if state != LiveState.PLAIN or not live.is_file():
            logger.debug("Config file not found (or not a plain file): %s", live)
            result.skipped.append(live)
            return False

        if self.dry_run:
            logger.info("[DRY RUN] Would capture %s -> %s", live, tracked)
            return True

        logger.info("Moving config to repo: %s -> %s", live, tracked)
        tracked.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(live, tracked)
        self._symlink_over(live, tracked)
        result.entries.append(ConfigFileEntry(live, tracked, ConfigOrigin.GENERATED))
        result.added.append(tracked.name)
        return True

    # -- public operations ----------------------------------------------------

    def restore(self, component: str, paths: Sequence[str | Path]) -> ConfigResult:
        """Symlink every path that has a tracked copy; back up plain live files first."""
        self._ensure_repo()
        self._validate_component(component)
        result = ConfigResult(component=component)
        for live in self._iter_paths(paths):
            if not self._restore_one(component, live, result):
                result.skipped.append(live)
        logger.info("Restored configuration for %s (%d linked)", component, len(result.entries))
        return result

    def capture(self, component: str, paths: Sequence[str | Path]) -> ConfigResult:
        """Move untracked live files into the repository, then commit them."""
        self._ensure_repo()
        self._validate_component(component)
        result = ConfigResult(component=component)
        for live in self._iter_paths(paths):
            self._capture_one(component, live, result)
        self._commit(result, f"Add new {component} configurations after installation")
        return result

    def sync(self, component: str, paths: Sequence[str | Path]) -> ConfigResult:
        """Restore tracked paths, capture untracked live ones, then commit."""
        self._ensure_repo()
        self._validate_component(component)
        result = ConfigResult(component=component)
        for live in self._iter_paths(paths):
            if self._restore_one(component, live, result):
                continue
            self._capture_one(component, live, result)
        self._commit(result, f"Add {component} configurations")
        return result

    def tracked(self, component: str) -> List[Path]:
        """Files currently tracked for *component*."""
        self._ensure_repo()
        comp_dir = self.repo_root / self._validate_component(component)
        if not comp_dir.is_dir():
            return []
        return sorted(p for p in comp_dir.iterdir() if p.is_file())

    # -- commit ---------------------------------------------------------------

    def _commit(self, result: ConfigResult, prefix: str) -> None:
        if self.dry_run:
            return
        captured = [e.repo_location for e in result.entries if e.origin == ConfigOrigin.GENERATED]
        try:
            # Captured earlier but never committed (a previous commit failed).
            leftover = [
                p for p in self.vcs.uncommitted(self.repo_root / result.component)
                if p not in captured
            ]
        except OSError as exc:
            leftover = []
            logger.warning("Cannot list uncommitted %s configurations: %s", result.component, exc)
        files = captured + leftover
        if not files:
            return
        if leftover:
            logger.info(
                "Including %d previously captured %s configuration(s)", len(leftover), result.component,
            )
        message = f"{prefix}: {' '.join(p.name for p in files)}"
        try:
            ok = self.vcs.stage(files) and self.vcs.commit(message)
        except OSError as exc:
            ok = False
            result.commit_error = str(exc)
        if ok:
            result.committed = True
            logger.info("Committed %d %s configuration(s)", len(files), result.component)
            return
        result.commit_error = result.commit_error or "stage/commit failed"
        logger.warning(
            "Could not commit %s configurations (%s); files are captured and will be "
            "picked up by a later commit",
            result.component,
            result.commit_error,
        )
