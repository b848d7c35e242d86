"""Pydantic models for provisioner configuration.

Defines the data structures for:
- The on-disk settings file (``paths``, ``run``, ``reboot`` sections)
- The per-run configuration object propagated to every unit
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from provisioner.identity import Identity

# ---------------------------------------------------------------------------
# Defaults (match the historical shell installer locations)
# ---------------------------------------------------------------------------

DEFAULT_STATE_DIR = Path("/var/cache/system-installer")
DEFAULT_CONFIG_REPO = Path("/repo/personal/core-configs")
DEFAULT_PHASES_DIR = Path("phases")
DEFAULT_LOG_DIR = Path("/var/log/system-installer")

#: Concern tags that trigger the reboot advisory out of the box.
DEFAULT_REBOOT_CONCERNS: List[str] = ["display", "drivers", "kernel"]


# ---------------------------------------------------------------------------
# Settings file sections
# ---------------------------------------------------------------------------


class PathSettings(BaseModel):
    """``paths:`` section."""

    model_config = ConfigDict(extra="forbid")

    state_dir: Path = DEFAULT_STATE_DIR
    config_repo: Path = DEFAULT_CONFIG_REPO
    phases_dir: Path = DEFAULT_PHASES_DIR
    log_dir: Optional[Path] = DEFAULT_LOG_DIR


class RunSettings(BaseModel):
    """``run:`` section."""

    model_config = ConfigDict(extra="forbid")

    interactive: bool = False
    auto_reboot: bool = False


class RebootSettings(BaseModel):
    """``reboot:`` section."""

    model_config = ConfigDict(extra="forbid")

    concerns: List[str] = Field(default_factory=lambda: list(DEFAULT_REBOOT_CONCERNS))


class Settings(BaseModel):
    """Root model of ``provisioner.yaml``.

    Structure::

        paths:
          state_dir: /var/cache/system-installer
          config_repo: /repo/personal/core-configs
          phases_dir: ./phases
          log_dir: /var/log/system-installer
        run:
          interactive: false
          auto_reboot: false
        reboot:
          concerns: [display, drivers, kernel]
    """

    model_config = ConfigDict(extra="forbid")

    paths: PathSettings = Field(default_factory=PathSettings)
    run: RunSettings = Field(default_factory=RunSettings)
    reboot: RebootSettings = Field(default_factory=RebootSettings)


# ---------------------------------------------------------------------------
# RunConfig: the object every unit receives
# ---------------------------------------------------------------------------


class RunConfig(BaseModel):
    """Immutable per-run configuration passed into each unit's entry point.

    Replaces the ambient ``FORCE_MODE`` / ``INTERACTIVE`` / ``SUDO_USER``
    environment flags of the shell installer.
    """

    model_config = ConfigDict(frozen=True)

    force: bool = False
    verbose: bool = False
    quiet: bool = False
    interactive: bool = False
    dry_run: bool = False
    auto_reboot: bool = False
    state_dir: Path = DEFAULT_STATE_DIR
    config_repo: Path = DEFAULT_CONFIG_REPO
    log_dir: Optional[Path] = None
    identity: Optional[Identity] = None
    run_id: str = ""

    @field_validator("state_dir", "config_repo", "log_dir")
    @classmethod
    def _absolute(cls, value: Optional[Path]) -> Optional[Path]:
        # Units run with their own working directory.
        return None if value is None else value.expanduser().resolve()

    @model_validator(mode="after")
    def _exclusive_verbosity(self) -> "RunConfig":
        if self.verbose and self.quiet:
            raise ValueError("verbose and quiet are mutually exclusive")
        return self

    def to_env(self) -> dict[str, str]:
        """Render as ``PROVISIONER_*`` variables for script-backed units."""
        env = {
            "PROVISIONER_FORCE": "1" if self.force else "0",
            "PROVISIONER_VERBOSE": "1" if self.verbose else "0",
            "PROVISIONER_QUIET": "1" if self.quiet else "0",
            "PROVISIONER_INTERACTIVE": "1" if self.interactive else "0",
            "PROVISIONER_STATE_DIR": str(self.state_dir),
            "PROVISIONER_CONFIG_REPO": str(self.config_repo),
        }
        if self.identity is not None:
            env["PROVISIONER_USER"] = self.identity.name
            env["PROVISIONER_USER_HOME"] = self.identity.home
        if self.run_id:
            env["PROVISIONER_RUN_ID"] = self.run_id
        return env
