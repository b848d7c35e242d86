"""Settings file discovery and loading.

Lookup order for the settings file:

1. Explicit ``--config PATH``
2. ``PROVISIONER_CONFIG`` environment variable
3. ``/etc/provisioner/provisioner.yaml``
4. Built-in defaults (no file)

An explicitly requested file that does not exist is a configuration
error; the system-wide default path is optional.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from provisioner.config.models import Settings
from provisioner.errors import ConfigurationError

logger = logging.getLogger(__name__)

SYSTEM_SETTINGS_PATH = Path("/etc/provisioner/provisioner.yaml")
ENV_SETTINGS_PATH = "PROVISIONER_CONFIG"


def settings_path(explicit: Optional[str | Path] = None) -> Optional[Path]:
    """Return the settings file to load, or ``None`` for built-in defaults."""
    if explicit:
        return Path(explicit)
    env_path = os.environ.get(ENV_SETTINGS_PATH, "")
    if env_path:
        return Path(env_path)
    if SYSTEM_SETTINGS_PATH.is_file():
        return SYSTEM_SETTINGS_PATH
    return None


def load_settings(path: Optional[str | Path] = None) -> Settings:
    """Load and validate a settings YAML file.

    Raises :class:`ConfigurationError` when the file is missing, is not
    valid YAML, or contains unknown keys / wrong types.
    """
    resolved = settings_path(path)
    if resolved is None:
        logger.debug("No settings file found; using built-in defaults")
        return Settings()

    if not resolved.is_file():
        raise ConfigurationError(f"Settings file not found: {resolved}")

    try:
        with open(resolved, encoding="utf-8") as fh:
            raw: Dict[str, Any] = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Settings file {resolved} is not valid YAML: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Settings file {resolved} must contain a mapping")

    try:
        settings = Settings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings in {resolved}: {exc}") from exc

    logger.debug("Loaded settings from %s", resolved)
    return settings

