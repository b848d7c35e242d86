"""Error taxonomy for the provisioner.

Three families matter to callers:

* :class:`ConfigurationError` — detected before any unit executes
  (missing repository root, unknown phase names, bad settings).
* :class:`CollaboratorError` — an external tool (package manager,
  downloader, git, a unit script) failed.  Contained at unit granularity.
* :class:`StateCorruption` — the completion ledger can no longer be
  trusted.  Always fatal.
"""

from __future__ import annotations

from typing import Optional


class ProvisionerError(RuntimeError):
    """Base class for every error raised by the provisioner."""


class ConfigurationError(ProvisionerError):
    """Invalid configuration detected before execution starts."""


class RunLockError(ConfigurationError):
    """Another orchestrator invocation already holds the run lock."""

    def __init__(self, lock_path: str, owner_pid: Optional[int] = None) -> None:
        self.lock_path = lock_path
        self.owner_pid = owner_pid
        owner = f" (held by pid {owner_pid})" if owner_pid else ""
        super().__init__(f"Another provisioning run is active: {lock_path}{owner}")


class CollaboratorError(ProvisionerError):
    """An external collaborator (apt, git, a unit script) failed."""

    def __init__(
        self,
        message: str,
        *,
        collaborator: str = "",
        returncode: Optional[int] = None,
    ) -> None:
        self.collaborator = collaborator
        self.returncode = returncode
        super().__init__(message)


class StateCorruption(ProvisionerError):
    """The State Store or Package Registry could not be read or written."""

    def __init__(self, message: str, *, path: str = "") -> None:
        self.path = path
        super().__init__(f"{message}: {path}" if path else message)
