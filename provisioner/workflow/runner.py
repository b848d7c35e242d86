"""Phase/Script Runner.

Executes selected phases strictly in order, one unit at a time.  Per
unit the state machine is::

    Pending → Running → {Succeeded, Failed, Skipped}

* A unit whose completion key is already recorded is skipped, unless
  force mode is on or the unit was re-selected with ``--unit``.
* Completion is recorded immediately after a unit succeeds, so an
  interrupted run resumes right after the last success.
* A failed unit aborts its phase.  Non-interactive runs then stop;
  interactive runs ask whether to continue with later phases.
* :class:`CollaboratorError` is contained at unit granularity.
  :class:`StateCorruption` and :class:`ConfigurationError` propagate.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Collection, Iterable, List, Optional, Sequence

from provisioner import ui
from provisioner.command import run_command
from provisioner.config.models import DEFAULT_REBOOT_CONCERNS, RunConfig
from provisioner.configs.manager import ConfigLifecycleManager
from provisioner.errors import CollaboratorError
from provisioner.packages.registry import InstallCoordinator
from provisioner.state.models import ResumePoint
from provisioner.state.store import StateStore
from provisioner.workflow.phases import REBOOT_CONCERN, Phase, ScriptUnit, UnitContext

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_UNIT_FAILED = 1
EXIT_CONFIGURATION = 2
EXIT_STATE_CORRUPTION = 3

RESUME_COMMAND = "provisioner run --phase {phase} --force"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class UnitState(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


@dataclass
class UnitResult:
    """Terminal state of one unit in this run."""

    phase: str
    unit: str
    key: str
    state: UnitState = UnitState.PENDING
    duration_seconds: float = 0.0
    reason: str = ""


@dataclass
class PhaseResult:
    name: str
    units: List[UnitResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    def _count(self, state: UnitState) -> int:
        return sum(1 for u in self.units if u.state == state)

    @property
    def succeeded(self) -> int:
        return self._count(UnitState.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(UnitState.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(UnitState.SKIPPED)


@dataclass
class RunSummary:
    """Per-invocation summary.  Never persisted."""

    total: int = 0
    succeeded: int = 0
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0
    phases: List[PhaseResult] = field(default_factory=list)
    failed_phase: Optional[str] = None
    rebooting: bool = False

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        return EXIT_SUCCESS if self.success else EXIT_UNIT_FAILED

    @property
    def resume_command(self) -> str:
        if self.failed_phase is None:
            return ""
        return RESUME_COMMAND.format(phase=self.failed_phase)


# ---------------------------------------------------------------------------
# Reboot collaborator
# ---------------------------------------------------------------------------


def system_reboot() -> None:
    """Reboot the host via systemd."""
    result = run_command(["systemctl", "reboot"])
    if not result.success:
        raise CollaboratorError(
            f"Reboot failed: {result.stderr or result.returncode}",
            collaborator="systemctl",
            returncode=result.returncode,
        )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class PhaseRunner:
    """Runs phases of units against a State Store.

    Args:
        store: Completion ledger.  Its ``force`` flag is the run's ForceMode.
        config: Per-run configuration handed to every unit.
        coordinator: Install Coordinator exposed to in-process units.
        configs: Configuration Lifecycle Manager exposed to in-process units.
        confirm: Yes/no prompt used by the interactive gate.
        reboot: Called when a reboot checkpoint fires and the operator
            (or ``auto_reboot``) agrees.  ``None`` disables rebooting.
        reboot_concerns: Concern tags that trigger the reboot checkpoint.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        store: StateStore,
        config: RunConfig,
        *,
        coordinator: Optional[InstallCoordinator] = None,
        configs: Optional[ConfigLifecycleManager] = None,
        confirm: Callable[..., bool] = ui.confirm,
        reboot: Optional[Callable[[], None]] = system_reboot,
        reboot_concerns: Iterable[str] = DEFAULT_REBOOT_CONCERNS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.config = config
        self.coordinator = coordinator
        self.configs = configs
        self._confirm = confirm
        self._reboot = reboot
        self.reboot_concerns = frozenset(c.lower() for c in reboot_concerns) | {REBOOT_CONCERN}
        self._clock = clock

    # -- predicates -----------------------------------------------------------

    def needs_reboot(self, unit: ScriptUnit) -> bool:
        """True when *unit* declares a concern that warrants a reboot."""
        return bool(unit.concerns & self.reboot_concerns)

    def unit_log_path(self, phase: Phase, unit: ScriptUnit) -> Optional[Path]:
        if self.config.log_dir is None:
            return None
        return Path(self.config.log_dir) / "units" / f"{phase.name}__{unit.identity}.log"

    # -- top level ------------------------------------------------------------

    def run(self, phases: Sequence[Phase], *, reselect: Collection[str] = ()) -> RunSummary:
        """Execute *phases* in order and return the :class:`RunSummary`."""
        summary = RunSummary(total=sum(len(p.units) for p in phases))
        started = self._clock()

        resume = self.store.load_resume_point()
        if resume is not None:
            where = f"{resume.phase}/{resume.next_unit}" if resume.next_unit else resume.phase
            ui.info(f"Resuming after reboot checkpoint at {where}")
            logger.info("Resuming after reboot checkpoint at %s", where)

        stop = False
        for index, phase in enumerate(phases):
            if stop:
                summary.phases.append(self._pending_phase(phase))
                continue

            result = self.run_phase(phase, reselect=reselect, summary=summary)
            summary.phases.append(result)

            if summary.rebooting:
                stop = True
            elif result.failed:
                summary.failed_phase = summary.failed_phase or phase.name
                remaining = index < len(phases) - 1
                if remaining and self.config.interactive and self._confirm(
                    "A unit failed. Continue with the remaining phases?", default=False,
                ):
                    continue
                stop = True

        for phase_result in summary.phases:
            for unit in phase_result.units:
                if unit.state == UnitState.SUCCEEDED:
                    summary.succeeded += 1
                elif unit.state == UnitState.FAILED:
                    summary.failed.append(unit.key)
                elif unit.state == UnitState.SKIPPED:
                    summary.skipped.append(unit.key)
                else:
                    summary.pending.append(unit.key)

        summary.duration_seconds = self._clock() - started

        if summary.success and not summary.rebooting and not self.config.dry_run:
            self.store.clear_resume_point()

        return summary

    @staticmethod
    def _pending_phase(phase: Phase) -> PhaseResult:
        return PhaseResult(
            name=phase.name,
            units=[UnitResult(phase.name, u.identity, u.completion_key) for u in phase.units],
        )

    # -- one phase ------------------------------------------------------------

    def run_phase(
        self,
        phase: Phase,
        *,
        reselect: Collection[str] = (),
        summary: Optional[RunSummary] = None,
    ) -> PhaseResult:
        """Run every unit of *phase* in declared order."""
        ui.phase(phase.name)
        result = PhaseResult(name=phase.name)
        started = self._clock()
        aborted = False

        for position, unit in enumerate(phase.units):
            unit_result = UnitResult(phase.name, unit.identity, unit.completion_key)
            result.units.append(unit_result)

            if aborted or (summary is not None and summary.rebooting):
                unit_result.reason = "aborted"
                continue

            self.run_unit(phase, unit, unit_result, reselected=unit.completion_key in reselect)

            if unit_result.state == UnitState.FAILED:
                aborted = True
                logger.error("Aborting phase %s after %s failed", phase.name, unit.identity)
            elif unit_result.state == UnitState.SUCCEEDED and self.needs_reboot(unit):
                following = phase.units[position + 1:]
                next_unit = following[0].identity if following else None
                if self._reboot_checkpoint(phase, unit, next_unit) and summary is not None:
                    summary.rebooting = True

        result.duration_seconds = self._clock() - started
        self._report_phase(result)
        return result

    # -- one unit -------------------------------------------------------------

    def run_unit(
        self,
        phase: Phase,
        unit: ScriptUnit,
        result: UnitResult,
        *,
        reselected: bool = False,
    ) -> UnitResult:
        """Drive *unit* through its state machine, recording into *result*."""
        if not reselected and self.store.check(unit.completion_key):
            result.state = UnitState.SKIPPED
            result.reason = "completed"
            ui.skipped(f"{unit.identity} (already completed)")
            return result

        if self.config.dry_run:
            result.reason = "dry-run"
            ui.step(f"[DRY RUN] Would run {unit.completion_key}")
            return result

        if self.config.interactive:
            if unit.description:
                for line in unit.description.splitlines():
                    ui.info(line)
            if not self._confirm(f"Run {unit.completion_key}?", default=True):
                result.state = UnitState.SKIPPED
                result.reason = "declined"
                ui.skipped(f"{unit.identity} (declined)")
                return result

        result.state = UnitState.RUNNING
        ui.step(f"Running {unit.identity}")
        ctx = UnitContext(
            config=self.config,
            store=self.store,
            phase=phase.name,
            unit=unit.identity,
            coordinator=self.coordinator,
            configs=self.configs,
            log_path=self.unit_log_path(phase, unit),
        )

        started = self._clock()
        try:
            unit.entry_point(ctx)
        except (CollaboratorError, OSError) as exc:
            result.duration_seconds = self._clock() - started
            result.state = UnitState.FAILED
            result.reason = str(exc)
            logger.error("Unit %s failed: %s", unit.completion_key, exc)
            ui.fail(f"{unit.identity}: {exc}")
            return result

        result.duration_seconds = self._clock() - started
        self.store.set(unit.completion_key, fingerprint=unit.fingerprint)
        result.state = UnitState.SUCCEEDED
        ui.ok(f"{unit.identity} ({ui.elapsed_str(result.duration_seconds)})")
        return result

    # -- reboot checkpoint ----------------------------------------------------

    def _reboot_checkpoint(self, phase: Phase, unit: ScriptUnit, next_unit: Optional[str]) -> bool:
        """Record a resume point and reboot if allowed.  True when rebooting."""
        concerns = ", ".join(sorted(unit.concerns & self.reboot_concerns))
        self.store.save_resume_point(
            ResumePoint(phase=phase.name, next_unit=next_unit, reason=f"{unit.completion_key}: {concerns}")
        )
        ui.warn(f"Reboot recommended after {unit.identity} (concerns: {concerns})")

        if self._reboot is None:
            return False
        wanted = self.config.auto_reboot or (
            self.config.interactive and self._confirm("Reboot now?", default=False)
        )
        if not wanted:
            ui.info("Continuing without reboot; reboot before relying on this change")
            return False

        ui.warn("Rebooting; re-run provisioner afterwards to continue")
        logger.warning("Rebooting after %s", unit.completion_key)
        try:
            self._reboot()
        except CollaboratorError as exc:
            logger.warning("Reboot after %s failed: %s", unit.completion_key, exc)
            ui.warn(f"Reboot failed ({exc}); reboot manually before relying on this change")
            return False
        return True

    # -- reporting ------------------------------------------------------------

    @staticmethod
    def _report_phase(result: PhaseResult) -> None:
        ui.detail(
            result.name,
            f"{result.succeeded} succeeded, {result.failed} failed, "
            f"{result.skipped} skipped in {ui.elapsed_str(result.duration_seconds)}",
        )


def report_summary(summary: RunSummary) -> None:
    """Print per-phase rows, run totals and, on failure, the resume command."""
    rows = [
        [
            p.name,
            str(p.succeeded),
            str(p.failed),
            str(p.skipped),
            ui.elapsed_str(p.duration_seconds),
        ]
        for p in summary.phases
    ]
    ui.table("Provisioning summary", ["Phase", "Succeeded", "Failed", "Skipped", "Duration"], rows)

    totals = (
        f"Total: {summary.total}  Succeeded: {summary.succeeded}  "
        f"Failed: {len(summary.failed)}  Skipped: {len(summary.skipped)}  "
        f"Pending: {len(summary.pending)}\n"
        f"Duration: {ui.elapsed_str(summary.duration_seconds)}"
    )
    if summary.failed:
        failed = "\n".join(f"  • {key}" for key in summary.failed)
        ui.error_panel(
            "Provisioning failed",
            f"{totals}\n\nFailed units:\n{failed}\n\nResume with:\n  {summary.resume_command}",
        )
    elif summary.rebooting:
        ui.success_panel("Rebooting", f"{totals}\n\nRe-run provisioner after the reboot to continue.")
    else:
        ui.success_panel("Provisioning complete", totals)


def changed_since_completion(store: StateStore, unit: ScriptUnit) -> bool:
    """True when *unit* completed with a different script fingerprint than it has now."""
    record = store.get_record(unit.completion_key)
    if record is None or record.fingerprint is None or unit.fingerprint is None:
        return False
    return record.fingerprint != unit.fingerprint
