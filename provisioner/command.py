"""Subprocess wrapper shared by the external collaborators.

Collaborators report success through the exit status only; nothing
here parses tool output.  A missing executable becomes a failed
result with return code 127 rather than an exception.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

#: Return code reported when the executable is missing from PATH.
EXIT_NOT_FOUND: int = 127


@dataclass
class CommandResult:
    """Outcome of one collaborator subprocess invocation."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


def run_command(
    cmd: List[str],
    *,
    cwd: Optional[Path] = None,
    extra_env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """Run *cmd* and return a :class:`CommandResult` (never raises for exit status)."""
    env = {**os.environ}
    if extra_env:
        env.update(extra_env)

    logger.debug("Running: %s", " ".join(cmd))
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            env=env,
            cwd=str(cwd) if cwd is not None else None,
        )
    except FileNotFoundError:
        return CommandResult(
            command=" ".join(cmd),
            returncode=EXIT_NOT_FOUND,
            stderr=f"{cmd[0]} not found on PATH",
        )

    return CommandResult(
        command=" ".join(cmd),
        returncode=proc.returncode,
        stdout=proc.stdout.strip(),
        stderr=proc.stderr.strip(),
    )
