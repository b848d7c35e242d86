"""Completion-key validation and typed per-component key sets.

Keys are stable strings such as ``01-init/00-system-init.sh`` (unit
completion) or ``terminal-tools/zsh-default-shell`` (sub-step).  A
component declares its sub-steps once as a :class:`StepKey` enum::

    class TerminalSteps(StepKey):
        ZSH_INSTALLED = "terminal-tools/zsh-installed"
        OH_MY_ZSH = "terminal-tools/oh-my-zsh"

Member values are validated when the enum class is created, so a
malformed key fails at import time instead of silently creating a
record nothing ever checks.
"""

from __future__ import annotations

import re
from enum import Enum

from provisioner.errors import ConfigurationError

#: One or more ``/``-separated segments of ``[A-Za-z0-9._+-]`` starting alphanumeric.
KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*(/[A-Za-z0-9][A-Za-z0-9._+-]*)*$")

KEY_SEPARATOR = "/"


def validate_key(key: str) -> str:
    """Return *key* as a plain string, or raise :class:`ConfigurationError`."""
    if not isinstance(key, str) or not KEY_PATTERN.match(key):
        raise ConfigurationError(f"Invalid completion key: {key!r}")
    return str(key)


def unit_key(phase: str, unit: str) -> str:
    """Completion key for a whole unit: ``<phase>/<unit>``."""
    return validate_key(f"{phase}{KEY_SEPARATOR}{unit}")


class StepKey(str, Enum):
    """Base class for a component's enumerated sub-step keys."""

    def __new__(cls, value: str) -> "StepKey":
        obj = str.__new__(cls, validate_key(value))
        obj._value_ = value
        return obj

    def __str__(self) -> str:
        return self.value
