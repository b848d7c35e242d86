"""Package-manager collaborator: ``apt-get`` wrapper.

Wraps ``apt-get`` as a subprocess so the provisioner never parses
package-manager output beyond the exit status.  No timeout is applied:
a hung ``apt-get`` stalls the run, which is the documented behaviour.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Protocol, Sequence

from provisioner.command import run_command

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Collaborator interface
# ---------------------------------------------------------------------------


class PackageManager(Protocol):
    """What the Install Coordinator needs from a package manager.

    ``is_installed`` is an optional capability: implementations that
    cannot answer set it to ``None`` and callers skip the probe.
    """

    is_installed: Optional[Callable[[str], bool]]

    def install(self, names: Sequence[str]) -> bool: ...

    def refresh_index(self) -> bool: ...


# ---------------------------------------------------------------------------
# apt implementation
# ---------------------------------------------------------------------------


class AptPackageManager:
    """Debian/Ubuntu package manager via ``apt-get`` and ``dpkg-query``."""

    NONINTERACTIVE_ENV: Dict[str, str] = {"DEBIAN_FRONTEND": "noninteractive"}

    def __init__(self, *, dry_run: bool = False) -> None:
        self.dry_run = dry_run
        self.is_installed: Optional[Callable[[str], bool]] = self._dpkg_installed

    def install(self, names: Sequence[str]) -> bool:
        """``apt-get install -y <names>``; True on exit status 0."""
        if not names:
            return True
        cmd = ["apt-get", "install", "-y", *names]
        if self.dry_run:
            logger.info("[DRY RUN] Would run: %s", " ".join(cmd))
            return True
        result = run_command(cmd, extra_env=self.NONINTERACTIVE_ENV)
        if not result.success:
            logger.error(
                "Failed to install packages (rc=%d): %s | %s",
                result.returncode,
                " ".join(names),
                result.stderr or "(no stderr)",
            )
        return result.success

    def refresh_index(self) -> bool:
        """``apt-get update``; True on exit status 0."""
        if self.dry_run:
            logger.info("[DRY RUN] Would run: apt-get update")
            return True
        result = run_command(["apt-get", "update"], extra_env=self.NONINTERACTIVE_ENV)
        if not result.success:
            logger.error("Failed to update package lists: %s", result.stderr or "(no stderr)")
        return result.success

    def _dpkg_installed(self, name: str) -> bool:
        result = run_command(["dpkg-query", "-W", "-f=${Status}", name])
        return result.success and result.stdout.endswith("install ok installed")
