"""Phase discovery, selection, and the Phase/Script Runner."""

from provisioner.workflow.phases import (
    Phase,
    ScriptEntryPoint,
    ScriptUnit,
    UnitContext,
    discover_phases,
    parse_name_list,
    resolve_unit_selectors,
    select_phases,
)
from provisioner.workflow.runner import (
    EXIT_CONFIGURATION,
    EXIT_STATE_CORRUPTION,
    EXIT_SUCCESS,
    EXIT_UNIT_FAILED,
    PhaseResult,
    PhaseRunner,
    RunSummary,
    UnitResult,
    UnitState,
    changed_since_completion,
    report_summary,
)

__all__ = [
    "EXIT_CONFIGURATION",
    "EXIT_STATE_CORRUPTION",
    "EXIT_SUCCESS",
    "EXIT_UNIT_FAILED",
    "Phase",
    "PhaseResult",
    "PhaseRunner",
    "RunSummary",
    "ScriptEntryPoint",
    "ScriptUnit",
    "UnitContext",
    "UnitResult",
    "UnitState",
    "changed_since_completion",
    "discover_phases",
    "parse_name_list",
    "report_summary",
    "resolve_unit_selectors",
    "select_phases",
]
