"""Configuration Lifecycle Manager and its version-control collaborator."""

from provisioner.configs.git import GitRepository, VersionControl
from provisioner.configs.manager import (
    ConfigFileEntry,
    ConfigLifecycleManager,
    ConfigOrigin,
    ConfigResult,
    LiveState,
)

__all__ = [
    "ConfigFileEntry",
    "ConfigLifecycleManager",
    "ConfigOrigin",
    "ConfigResult",
    "GitRepository",
    "LiveState",
    "VersionControl",
]
