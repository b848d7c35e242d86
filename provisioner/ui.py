"""Colorized console output for provisioning runs.

Thin wrapper around :mod:`rich` that degrades gracefully when stdout
is not a TTY (e.g. piped, CI, a serial console after reboot).  All
user-facing status messages should flow through this module;
``logger.*`` calls are kept for structured file logging.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

# Shared console — auto-detects TTY; force_terminal=None lets Rich decide.
console = Console(stderr=False, force_terminal=None)

_QUIET = False

# ── Symbols ────────────────────────────────────────────────────────────────

_PASS = "[bold green]✓[/]"
_FAIL = "[bold red]✗[/]"
_WARN = "[bold yellow]⚠[/]"
_SKIP = "[bold cyan]⏭[/]"
_ARROW = "[bold cyan]›[/]"
_DOT = "[dim]·[/]"


def set_quiet(quiet: bool) -> None:
    """Suppress non-essential lines (phase headers, steps, info)."""
    global _QUIET
    _QUIET = quiet


# ── Phase headers ──────────────────────────────────────────────────────────


def phase(title: str) -> None:
    """Print a bold phase header (e.g. ``01-init``)."""
    if _QUIET:
        return
    console.print()
    console.print(f"[bold blue]── {title} ──[/]")


# ── Status lines ───────────────────────────────────────────────────────────


def ok(msg: str) -> None:
    """Green checkmark + message."""
    if _QUIET:
        return
    console.print(f"  {_PASS} {msg}")


def fail(msg: str) -> None:
    """Red cross + message.  Printed even in quiet mode."""
    console.print(f"  {_FAIL} [red]{msg}[/]")


def warn(msg: str) -> None:
    """Yellow warning + message.  Printed even in quiet mode."""
    console.print(f"  {_WARN} [yellow]{msg}[/]")


def skipped(msg: str) -> None:
    """Cyan skip marker + message."""
    if _QUIET:
        return
    console.print(f"  {_SKIP} [cyan]{msg}[/]")


def step(msg: str) -> None:
    """Cyan arrow + action message (in-progress)."""
    if _QUIET:
        return
    console.print(f"  {_ARROW} {msg}")


def info(msg: str) -> None:
    """Dim dot + informational message."""
    if _QUIET:
        return
    console.print(f"  {_DOT} [dim]{msg}[/]")


def detail(key: str, value: str) -> None:
    """Key-value pair, indented."""
    if _QUIET:
        return
    console.print(f"    [bold]{key}[/]: {value}")


def error_msg(msg: str) -> None:
    """Bold red error message (not indented)."""
    console.print(f"[bold red]ERROR:[/] {msg}")


# ── Banners / panels ──────────────────────────────────────────────────────


def success_panel(title: str, body: str) -> None:
    """Green-bordered success panel."""
    console.print()
    console.print(
        Panel(
            body,
            title=f"[bold green]{title}[/]",
            border_style="green",
            padding=(1, 2),
        )
    )


def error_panel(title: str, body: str) -> None:
    """Red-bordered error panel."""
    console.print()
    console.print(
        Panel(
            body,
            title=f"[bold red]{title}[/]",
            border_style="red",
            padding=(1, 2),
        )
    )


def table(title: str, columns: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
    """Render a simple table (status listings, package reports)."""
    tbl = Table(title=title, show_lines=False, header_style="bold")
    for col in columns:
        tbl.add_column(col)
    for row in rows:
        tbl.add_row(*row)
    console.print(tbl)


# ── Prompts ────────────────────────────────────────────────────────────────


def confirm(question: str, *, default: bool = True) -> bool:
    """Ask a yes/no question on the console."""
    return Confirm.ask(question, default=default, console=console)


# ── Progress helpers ───────────────────────────────────────────────────────


def elapsed_str(seconds: float) -> str:
    """Format seconds as ``Hh Mm Ss`` (hours and minutes only when non-zero)."""
    m, s = divmod(int(seconds), 60)
    h, m = divmod(m, 60)
    if h > 0:
        return f"{h}h {m}m {s}s"
    if m > 0:
        return f"{m}m {s}s"
    return f"{s}s"


# ── Logging setup ──────────────────────────────────────────────────────────


def configure_logging(
    *,
    verbose: bool = False,
    quiet: bool = False,
    log_dir: Optional[Path] = None,
) -> Optional[Path]:
    """Attach console (and optional file) handlers to the ``provisioner`` logger.

    Returns the log file path when a file handler was installed.  An
    unwritable *log_dir* is reported and skipped; it never aborts a run.
    """
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    root = logging.getLogger("provisioner")
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console, show_path=verbose, rich_tracebacks=verbose, markup=False,
    )
    console_handler.setLevel(level)
    root.addHandler(console_handler)
    set_quiet(quiet)

    if log_dir is None:
        return None

    ts = datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = Path(log_dir) / f"provisioner-{ts}.log"
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as exc:
        warn(f"File logging disabled ({log_dir}): {exc}")
        return None
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
    )
    root.addHandler(file_handler)
    return log_path
