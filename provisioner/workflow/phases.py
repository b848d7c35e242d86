"""Phase and ScriptUnit model, on-disk discovery, and phase selection.

Phases live under ``phases_dir`` as ``NN-name`` directories; each
``*.sh`` file inside is one unit, run in file-name order::

    phases/
      01-init/
        00-system-init.sh
        10-base-packages.sh
      02-studio/
        00-audio.sh

A unit script may declare its concerns in a header comment::

    # REBOOT_REQUIRED
    # CONCERNS: display, drivers

Leading comment lines (after the shebang) form the unit description
shown by the interactive gate.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, FrozenSet, List, Optional, Sequence

from provisioner.config.models import RunConfig
from provisioner.configs.manager import ConfigLifecycleManager
from provisioner.errors import CollaboratorError, ConfigurationError
from provisioner.packages.registry import InstallCoordinator
from provisioner.state.keys import KEY_PATTERN, unit_key
from provisioner.state.store import StateStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PHASE_DIR_PATTERN = re.compile(r"^(\d{2})-(.+)$")
UNIT_GLOB = "*.sh"

#: Header line marking a unit that always warrants a reboot advisory.
REBOOT_MARKER = "# REBOOT_REQUIRED"
#: Concern tag recorded for units carrying :data:`REBOOT_MARKER`.
REBOOT_CONCERN = "reboot"
CONCERNS_PREFIX = "# CONCERNS:"

#: Maximum number of header comment lines kept as the description.
DESCRIPTION_LINES = 5

_NUMERIC_PREFIX = re.compile(r"^\d+-")


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


@dataclass
class UnitContext:
    """Everything a unit's entry point receives.

    Units get their configuration and collaborators from here, never
    from ambient process state.
    """

    config: RunConfig
    store: StateStore
    phase: str
    unit: str
    coordinator: Optional[InstallCoordinator] = None
    configs: Optional[ConfigLifecycleManager] = None
    log_path: Optional[Path] = None


#: Runs one unit.  Returns normally on success; raises
#: :class:`CollaboratorError` on failure.
UnitEntryPoint = Callable[[UnitContext], None]


@dataclass
class ScriptUnit:
    """Smallest schedulable unit of provisioning work."""

    identity: str
    completion_key: str
    entry_point: UnitEntryPoint
    concerns: FrozenSet[str] = frozenset()
    description: str = ""
    fingerprint: Optional[str] = None

    def matches(self, name: str) -> bool:
        """True for the file name, its stem, or the stem without its numeric prefix."""
        stem = self.identity[:-3] if self.identity.endswith(".sh") else self.identity
        return name in (self.identity, stem, _NUMERIC_PREFIX.sub("", stem))


@dataclass
class Phase:
    """Named, ordered group of units."""

    name: str
    ordinal: int
    units: List[ScriptUnit] = field(default_factory=list)

    @property
    def short_name(self) -> str:
        return _NUMERIC_PREFIX.sub("", self.name)

    def matches(self, name: str) -> bool:
        return name in (self.name, self.short_name)

    def find_unit(self, name: str) -> Optional[ScriptUnit]:
        for unit in self.units:
            if unit.matches(name):
                return unit
        return None


# ---------------------------------------------------------------------------
# Script entry point
# ---------------------------------------------------------------------------


class ScriptEntryPoint:
    """Runs a unit script with ``bash`` as an isolated child process.

    The child receives :meth:`RunConfig.to_env` plus ``PROVISIONER_PHASE``
    and ``PROVISIONER_UNIT``.  Output goes to the unit log when one is
    configured, else to the terminal.  No timeout is applied.
    """

    def __init__(self, path: str | Path, *, interpreter: str = "bash") -> None:
        self.path = Path(path).resolve()
        self.interpreter = interpreter

    def command(self) -> List[str]:
        return [self.interpreter, str(self.path)]

    def __call__(self, ctx: UnitContext) -> None:
        env = {**os.environ, **ctx.config.to_env()}
        env["PROVISIONER_PHASE"] = ctx.phase
        env["PROVISIONER_UNIT"] = ctx.unit
        cmd = self.command()
        logger.info("Running: %s", " ".join(cmd))

        try:
            if ctx.log_path is not None:
                ctx.log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(ctx.log_path, "a", encoding="utf-8") as log_fh:
                    proc = subprocess.run(
                        cmd, env=env, cwd=str(self.path.parent),
                        stdout=log_fh, stderr=subprocess.STDOUT,
                    )
            else:
                proc = subprocess.run(cmd, env=env, cwd=str(self.path.parent))
        except FileNotFoundError as exc:
            raise CollaboratorError(
                f"{self.interpreter} not found on PATH", collaborator=str(self.path), returncode=127,
            ) from exc

        if proc.returncode != 0:
            where = f" (see {ctx.log_path})" if ctx.log_path is not None else ""
            raise CollaboratorError(
                f"{self.path.name} exited with status {proc.returncode}{where}",
                collaborator=str(self.path),
                returncode=proc.returncode,
            )


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def script_fingerprint(path: Path) -> str:
    """md5 of the script contents."""
    return hashlib.md5(path.read_bytes()).hexdigest()


def parse_script_header(text: str) -> tuple[FrozenSet[str], str]:
    """Return ``(concerns, description)`` from a script's leading comments."""
    concerns: set[str] = set()
    description: List[str] = []
    in_header = True

    for line in text.splitlines():
        stripped = line.strip()
        if stripped == REBOOT_MARKER:
            concerns.add(REBOOT_CONCERN)
            continue
        if stripped.startswith(CONCERNS_PREFIX):
            tags = stripped[len(CONCERNS_PREFIX):].split(",")
            concerns.update(t.strip().lower() for t in tags if t.strip())
            continue
        if not in_header or stripped.startswith("#!"):
            continue
        if stripped.startswith("#"):
            body = stripped.lstrip("#").strip()
            if body and len(description) < DESCRIPTION_LINES:
                description.append(body)
        elif stripped:
            in_header = False

    return frozenset(concerns), "\n".join(description)


def load_script_unit(phase_name: str, path: Path) -> ScriptUnit:
    """Build a :class:`ScriptUnit` for the script at *path*."""
    if not KEY_PATTERN.match(path.name):
        raise ConfigurationError(f"Unit file name is not a valid identifier: {path}")
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read unit script {path}: {exc.strerror}") from exc
    concerns, description = parse_script_header(text)
    return ScriptUnit(
        identity=path.name,
        completion_key=unit_key(phase_name, path.name),
        entry_point=ScriptEntryPoint(path),
        concerns=concerns,
        description=description,
        fingerprint=script_fingerprint(path),
    )


def discover_phases(phases_dir: str | Path) -> List[Phase]:
    """Scan *phases_dir* for ``NN-name`` directories and their ``*.sh`` units.

    The root is resolved first so script paths stay valid whatever the
    working directory of the unit process.
    """
    root = Path(phases_dir).expanduser().resolve()
    if not root.is_dir():
        raise ConfigurationError(f"Phases directory not found: {root}")

    phases: List[Phase] = []
    for entry in sorted(root.iterdir()):
        m = PHASE_DIR_PATTERN.match(entry.name)
        if not entry.is_dir() or m is None:
            continue
        if not KEY_PATTERN.match(entry.name):
            raise ConfigurationError(f"Phase directory name is not a valid identifier: {entry}")
        units = [
            load_script_unit(entry.name, script)
            for script in sorted(entry.glob(UNIT_GLOB))
            if script.is_file()
        ]
        phases.append(Phase(name=entry.name, ordinal=int(m.group(1)), units=units))
        logger.debug("Discovered phase %s with %d units", entry.name, len(units))

    validate_phases(phases)
    return phases


def validate_phases(phases: Sequence[Phase]) -> None:
    """Reject duplicate phase names and duplicate completion keys."""
    seen_phases: set[str] = set()
    seen_keys: set[str] = set()
    for phase in phases:
        if phase.name in seen_phases:
            raise ConfigurationError(f"Duplicate phase name: {phase.name}")
        seen_phases.add(phase.name)
        for unit in phase.units:
            if unit.completion_key in seen_keys:
                raise ConfigurationError(f"Duplicate unit identity: {unit.completion_key}")
            seen_keys.add(unit.completion_key)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def parse_name_list(values: Optional[Sequence[str]]) -> List[str]:
    """Flatten ``["a,b", "c"]`` into ``["a", "b", "c"]``."""
    names: List[str] = []
    for value in values or []:
        names.extend(n.strip() for n in value.split(",") if n.strip())
    return names


def _resolve(phases: Sequence[Phase], names: Sequence[str], flag: str) -> set[str]:
    matched: set[str] = set()
    unknown: List[str] = []
    for name in names:
        hits = [p.name for p in phases if p.matches(name)]
        if not hits:
            unknown.append(name)
        matched.update(hits)
    if unknown:
        available = ", ".join(p.name for p in phases) or "(none)"
        raise ConfigurationError(
            f"Unknown phase name(s) for {flag}: {', '.join(unknown)}. Available: {available}"
        )
    return matched


def select_phases(
    phases: Sequence[Phase],
    *,
    only: Sequence[str] = (),
    skip: Sequence[str] = (),
) -> List[Phase]:
    """Apply ``--phase`` and ``--skip-phases``, validating every name first."""
    wanted = _resolve(phases, only, "--phase") if only else None
    skipped = _resolve(phases, skip, "--skip-phases")
    return [
        p for p in phases
        if (wanted is None or p.name in wanted) and p.name not in skipped
    ]


def resolve_unit_selectors(phases: Sequence[Phase], selectors: Sequence[str]) -> List[str]:
    """Map ``PHASE/UNIT`` selectors to completion keys; unknown ones are fatal."""
    keys: List[str] = []
    for selector in selectors:
        phase_name, sep, unit_name = selector.partition("/")
        if not sep or not unit_name:
            raise ConfigurationError(f"Unit selector must be PHASE/UNIT: {selector!r}")
        unit = None
        for phase in phases:
            if phase.matches(phase_name):
                unit = phase.find_unit(unit_name)
                if unit is not None:
                    break
        if unit is None:
            raise ConfigurationError(f"Unknown unit: {selector}")
        keys.append(unit.completion_key)
    return keys
