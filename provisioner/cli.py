"""CLI entry point for the host provisioner, built on typer.

Operator commands::

    provisioner run [--phase NAME] [--skip-phases A,B] [--force] ...
    provisioner status
    provisioner reset KEY | --phase NAME | --all
    provisioner packages

Unit helper commands (called from inside unit scripts; they read
``PROVISIONER_*`` from the environment the runner sets)::

    provisioner state check KEY        # exit 0 if completed, 1 if not
    provisioner state mark KEY
    provisioner packages install CATEGORY NAME...
    provisioner packages register CATEGORY NAME...
    provisioner config capture|restore|sync COMPONENT PATH...

Exit codes: 0 success, 1 a unit (or helper operation) failed,
2 configuration error, 3 state corruption.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

import typer

from provisioner import __version__, ui
from provisioner.config.models import RunConfig, Settings
from provisioner.config.settings import load_settings
from provisioner.configs.git import GitRepository
from provisioner.configs.manager import ConfigLifecycleManager, ConfigResult
from provisioner.errors import ConfigurationError, StateCorruption
from provisioner.identity import resolve_identity
from provisioner.packages.apt import AptPackageManager
from provisioner.packages.registry import FilePackageRegistry, InstallCoordinator
from provisioner.state.lock import LOCK_FILENAME, RunLock
from provisioner.state.store import FileStateStore
from provisioner.workflow.phases import (
    Phase,
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
    PhaseRunner,
    changed_since_completion,
    report_summary,
)

logger = logging.getLogger(__name__)

#: State value recording which run last refreshed the package index.
INDEX_REFRESHED_KEY = "packages/index-refreshed"

_NUMERIC_PREFIX = re.compile(r"^\d+-")

# ── App ──────────────────────────────────────────────────────────────────────

app = typer.Typer(
    name="provisioner",
    help="Provision this host by running ordered phases of idempotent units.",
    no_args_is_help=True,
    add_completion=False,
)
state_app = typer.Typer(help="Completion-state helpers for unit scripts.", no_args_is_help=True)
packages_app = typer.Typer(help="Package registry report and install helpers.")
config_app = typer.Typer(help="Capture/restore configuration files.", no_args_is_help=True)

app.add_typer(state_app, name="state")
app.add_typer(packages_app, name="packages")
app.add_typer(config_app, name="config")


# ── Shared helpers ───────────────────────────────────────────────────────────


@contextmanager
def _exit_on_error() -> Iterator[None]:
    """Map fatal provisioner errors to exit codes with a diagnostic."""
    try:
        yield
    except StateCorruption as exc:
        ui.error_msg(f"State corruption: {exc}")
        raise typer.Exit(EXIT_STATE_CORRUPTION) from exc
    except ConfigurationError as exc:
        ui.error_msg(str(exc))
        raise typer.Exit(EXIT_CONFIGURATION) from exc


def _state_dir(settings: Settings, override: Optional[Path]) -> Path:
    path = override if override is not None else settings.paths.state_dir
    return path.expanduser().resolve()


def _phases(settings: Settings, override: Optional[Path]) -> List[Phase]:
    return discover_phases(override if override is not None else settings.paths.phases_dir)


def _coordinator(state_dir: Path, *, dry_run: bool = False, refresh_index: bool = True) -> InstallCoordinator:
    return InstallCoordinator(
        FilePackageRegistry(state_dir),
        AptPackageManager(dry_run=dry_run),
        refresh_index=refresh_index,
    )


def _config_manager(config_repo: Path, *, dry_run: bool = False) -> ConfigLifecycleManager:
    return ConfigLifecycleManager(config_repo, GitRepository(config_repo), dry_run=dry_run)


def _print_package_report(coordinator: InstallCoordinator) -> None:
    report = coordinator.report_by_category()
    if not report:
        ui.info("No packages recorded")
        return
    rows = [[category, str(len(names)), " ".join(names)] for category, names in report]
    ui.table("Installed packages", ["Category", "Count", "Packages"], rows)
    failed = coordinator.failed_packages()
    if failed:
        ui.warn(f"Failed packages: {' '.join(failed)}")


# ── run ──────────────────────────────────────────────────────────────────────


@app.command()
def run(
    phase: Optional[List[str]] = typer.Option(
        None, "--phase", help="Run only these phases (comma-separated or repeated).",
    ),
    skip_phases: Optional[List[str]] = typer.Option(
        None, "--skip-phases", help="Run every phase except these (comma-separated).",
    ),
    unit: Optional[List[str]] = typer.Option(
        None, "--unit", help="Re-run PHASE/UNIT even if already completed. Repeatable.",
    ),
    force: bool = typer.Option(
        False, "--force", help="Treat every completion marker as absent.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug output."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only failures and the summary."),
    interactive: Optional[bool] = typer.Option(
        None,
        "--interactive/--non-interactive",
        help="Prompt before each unit. Default from settings (off).",
    ),
    auto_reboot: bool = typer.Option(
        False, "--auto-reboot", help="Reboot automatically at reboot checkpoints.",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Show what would run without running it.",
    ),
    config: Optional[Path] = typer.Option(None, "--config", help="Settings YAML file."),
    phases_dir: Optional[Path] = typer.Option(None, "--phases-dir", help="Directory of NN-name phases."),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir", help="State Store directory."),
    list_phases: bool = typer.Option(False, "--list", help="List phases and units, then exit."),
) -> None:
    """Run the provisioning phases.

    Completed units are skipped, so re-running resumes after the last
    success.  Exits 1 if any unit failed and prints the resume command.
    """
    if verbose and quiet:
        ui.error_msg("--verbose and --quiet are mutually exclusive")
        raise typer.Exit(EXIT_CONFIGURATION)

    with _exit_on_error():
        settings = load_settings(config)
        ui.configure_logging(
            verbose=verbose,
            quiet=quiet,
            log_dir=None if (dry_run or list_phases) else settings.paths.log_dir,
        )

        phases = _phases(settings, phases_dir)
        if list_phases:
            rows = [
                [p.name, u.identity, ", ".join(sorted(u.concerns)) or "-"]
                for p in phases for u in p.units
            ]
            ui.table("Phases", ["Phase", "Unit", "Concerns"], rows)
            raise typer.Exit(EXIT_SUCCESS)

        selected = select_phases(
            phases, only=parse_name_list(phase), skip=parse_name_list(skip_phases),
        )
        reselect = resolve_unit_selectors(phases, unit or [])

        state_root = _state_dir(settings, state_dir)
        config_repo = settings.paths.config_repo.expanduser().resolve()
        if not config_repo.is_dir():
            raise ConfigurationError(
                f"Configuration repository not found at {config_repo}; "
                "mount or clone it before provisioning"
            )

        run_config = RunConfig(
            force=force,
            verbose=verbose,
            quiet=quiet,
            interactive=settings.run.interactive if interactive is None else interactive,
            dry_run=dry_run,
            auto_reboot=auto_reboot or settings.run.auto_reboot,
            state_dir=state_root,
            config_repo=config_repo,
            log_dir=settings.paths.log_dir,
            identity=resolve_identity(),
            run_id=datetime.now().strftime("%Y%m%d-%H%M%S"),
        )
        logger.debug("Run configuration: %s", run_config.model_dump_json())

        store = FileStateStore(state_root, force=force)
        coordinator = _coordinator(state_root, dry_run=dry_run)
        runner = PhaseRunner(
            store,
            run_config,
            coordinator=coordinator,
            configs=_config_manager(config_repo, dry_run=dry_run),
            reboot_concerns=settings.reboot.concerns,
        )

        if dry_run:
            ui.info("Dry run: no units will execute and no state will be written")
            summary = runner.run(selected, reselect=reselect)
        else:
            store.initialize()
            with RunLock(state_root / LOCK_FILENAME):
                summary = runner.run(selected, reselect=reselect)

        report_summary(summary)
        if summary.success and not dry_run and not phase and not skip_phases:
            _print_package_report(coordinator)

    raise typer.Exit(summary.exit_code)


# ── status ───────────────────────────────────────────────────────────────────


@app.command()
def status(
    config: Optional[Path] = typer.Option(None, "--config", help="Settings YAML file."),
    phases_dir: Optional[Path] = typer.Option(None, "--phases-dir", help="Directory of NN-name phases."),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir", help="State Store directory."),
) -> None:
    """Show each unit's completion state."""
    with _exit_on_error():
        settings = load_settings(config)
        store = FileStateStore(_state_dir(settings, state_dir))
        rows = []
        for phase in _phases(settings, phases_dir):
            for unit in phase.units:
                record = store.get_record(unit.completion_key)
                if record is None:
                    state, when = "pending", "-"
                else:
                    state = "changed" if changed_since_completion(store, unit) else "completed"
                    when = record.timestamp
                rows.append([phase.name, unit.identity, state, when])
        ui.table("Unit status", ["Phase", "Unit", "State", "Completed at"], rows)

        resume = store.load_resume_point()
        if resume is not None:
            ui.warn(
                f"Resume point: {resume.phase}"
                + (f"/{resume.next_unit}" if resume.next_unit else "")
                + (f" ({resume.reason})" if resume.reason else "")
            )


# ── reset ────────────────────────────────────────────────────────────────────


@app.command()
def reset(
    keys: Optional[List[str]] = typer.Argument(None, help="Completion keys to clear."),
    phase: Optional[str] = typer.Option(None, "--phase", help="Clear every unit of this phase."),
    all_keys: bool = typer.Option(False, "--all", help="Clear every record and the resume point."),
    config: Optional[Path] = typer.Option(None, "--config", help="Settings YAML file."),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir", help="State Store directory."),
) -> None:
    """Clear completion records so units run again."""
    if not keys and not phase and not all_keys:
        ui.error_msg("Nothing to reset: give KEY..., --phase NAME or --all")
        raise typer.Exit(EXIT_CONFIGURATION)

    with _exit_on_error():
        settings = load_settings(config)
        state_root = _state_dir(settings, state_dir)
        store = FileStateStore(state_root)
        removed: List[str] = []
        with RunLock(state_root / LOCK_FILENAME):
            if all_keys:
                for key in store.keys():
                    store.reset(key)
                    removed.append(key)
                store.clear_resume_point()
            if phase:
                prefixes = sorted({
                    key.split("/", 1)[0] for key in store.keys()
                    if phase in (key.split("/", 1)[0], _NUMERIC_PREFIX.sub("", key.split("/", 1)[0]))
                })
                for prefix in prefixes:
                    removed.extend(store.reset_prefix(prefix))
            for key in keys or []:
                if store.reset(key):
                    removed.append(key)
                else:
                    ui.warn(f"{key} was not marked as completed")

    for key in removed:
        ui.ok(f"Reset {key}")
    if not removed:
        ui.info("No records removed")


# ── packages ─────────────────────────────────────────────────────────────────


@packages_app.callback(invoke_without_command=True)
def packages(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="Settings YAML file."),
    state_dir: Optional[Path] = typer.Option(
        None, "--state-dir", envvar="PROVISIONER_STATE_DIR", help="State Store directory.",
    ),
) -> None:
    """Report installed packages by category."""
    with _exit_on_error():
        settings = load_settings(config)
        ctx.obj = _state_dir(settings, state_dir)
        if ctx.invoked_subcommand is None:
            _print_package_report(_coordinator(ctx.obj))


def _helper_coordinator(state_root: Path, dry_run: bool) -> tuple[FileStateStore, InstallCoordinator, str]:
    """Coordinator that refreshes the index at most once per runner invocation."""
    store = FileStateStore(state_root)
    run_id = os.environ.get("PROVISIONER_RUN_ID", "")
    refresh = not (run_id and store.get_value(INDEX_REFRESHED_KEY) == run_id)
    return store, _coordinator(state_root, dry_run=dry_run, refresh_index=refresh), run_id


@packages_app.command("install")
def packages_install(
    ctx: typer.Context,
    category: str = typer.Argument(..., help="Package category (core, development, ...)."),
    names: List[str] = typer.Argument(..., help="Package names."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log the install instead of running it."),
) -> None:
    """Install packages that are not yet recorded as installed."""
    with _exit_on_error():
        store, coordinator, run_id = _helper_coordinator(ctx.obj, dry_run)
        try:
            ok = coordinator.install_if_needed(category, names)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        if coordinator.index_refreshed and run_id:
            store.set_value(INDEX_REFRESHED_KEY, run_id)
    if not ok:
        ui.fail(f"Some {category} packages failed to install")
        raise typer.Exit(EXIT_UNIT_FAILED)


@packages_app.command("register")
def packages_register(
    ctx: typer.Context,
    category: str = typer.Argument(..., help="Package category."),
    names: List[str] = typer.Argument(..., help="Package names."),
) -> None:
    """Record packages as installed without calling the package manager."""
    with _exit_on_error():
        try:
            added = _coordinator(ctx.obj).register(category, names)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
    if added:
        ui.ok(f"Registered {len(added)} {category} package(s)")


# ── state helpers ────────────────────────────────────────────────────────────


_STATE_DIR_OPTION = typer.Option(
    None, "--state-dir", envvar="PROVISIONER_STATE_DIR", help="State Store directory.",
)


@state_app.command("check")
def state_check(
    key: str = typer.Argument(..., help="Completion key."),
    force: bool = typer.Option(
        False, "--force", envvar="PROVISIONER_FORCE", help="Report every key as pending.",
    ),
    state_dir: Optional[Path] = _STATE_DIR_OPTION,
) -> None:
    """Exit 0 if KEY is completed, 1 otherwise."""
    with _exit_on_error():
        store = FileStateStore(_state_dir(load_settings(None), state_dir), force=force)
        done = store.check(key)
    raise typer.Exit(EXIT_SUCCESS if done else EXIT_UNIT_FAILED)


@state_app.command("mark")
def state_mark(
    key: str = typer.Argument(..., help="Completion key."),
    state_dir: Optional[Path] = _STATE_DIR_OPTION,
) -> None:
    """Record KEY as completed."""
    with _exit_on_error():
        store = FileStateStore(_state_dir(load_settings(None), state_dir))
        store.set(key)


# ── config helpers ───────────────────────────────────────────────────────────


def _config_command(operation: str, component: str, paths: List[Path], repo: Optional[Path]) -> None:
    with _exit_on_error():
        config_repo = repo if repo is not None else load_settings(None).paths.config_repo
        config_repo = config_repo.expanduser().resolve()
        manager = _config_manager(config_repo)
        result: ConfigResult = getattr(manager, operation)(component, paths)
    for entry in result.entries:
        ui.ok(f"{entry.live_location} -> {entry.repo_location}")
    for backup in result.backups:
        ui.info(f"Backup: {backup}")
    if result.commit_error:
        ui.warn(f"Commit failed: {result.commit_error}")


_REPO_OPTION = typer.Option(
    None, "--repo", envvar="PROVISIONER_CONFIG_REPO", help="Configuration repository root.",
)


@config_app.command("capture")
def config_capture(
    component: str = typer.Argument(..., help="Component namespace in the repository."),
    paths: List[Path] = typer.Argument(..., help="Live configuration paths."),
    repo: Optional[Path] = _REPO_OPTION,
) -> None:
    """Move live files into the repository and symlink them back."""
    _config_command("capture", component, paths, repo)


@config_app.command("restore")
def config_restore(
    component: str = typer.Argument(..., help="Component namespace in the repository."),
    paths: List[Path] = typer.Argument(..., help="Live configuration paths."),
    repo: Optional[Path] = _REPO_OPTION,
) -> None:
    """Symlink tracked files into place, backing up existing ones."""
    _config_command("restore", component, paths, repo)


@config_app.command("sync")
def config_sync(
    component: str = typer.Argument(..., help="Component namespace in the repository."),
    paths: List[Path] = typer.Argument(..., help="Live configuration paths."),
    repo: Optional[Path] = _REPO_OPTION,
) -> None:
    """Restore tracked files, capture untracked ones."""
    _config_command("sync", component, paths, repo)


# ── version ──────────────────────────────────────────────────────────────────


@app.command()
def version() -> None:
    """Print the provisioner version."""
    typer.echo(__version__)


# ── Entry point ──────────────────────────────────────────────────────────────


def main() -> int:
    """Run the CLI and return an exit code."""
    try:
        app()
        return 0
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else 0


if __name__ == "__main__":
    sys.exit(main())
