"""Settings file loading and the per-run configuration object."""

from provisioner.config.models import (
    DEFAULT_CONFIG_REPO,
    DEFAULT_LOG_DIR,
    DEFAULT_PHASES_DIR,
    DEFAULT_REBOOT_CONCERNS,
    DEFAULT_STATE_DIR,
    PathSettings,
    RebootSettings,
    RunConfig,
    RunSettings,
    Settings,
)
from provisioner.config.settings import load_settings, settings_path

__all__ = [
    "DEFAULT_CONFIG_REPO",
    "DEFAULT_LOG_DIR",
    "DEFAULT_PHASES_DIR",
    "DEFAULT_REBOOT_CONCERNS",
    "DEFAULT_STATE_DIR",
    "PathSettings",
    "RebootSettings",
    "RunConfig",
    "RunSettings",
    "Settings",
    "load_settings",
    "settings_path",
]
