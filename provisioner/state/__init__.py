"""Completion ledger: step records, typed keys, stores, and the run lock."""

from provisioner.state.keys import KEY_PATTERN, StepKey, unit_key, validate_key
from provisioner.state.lock import LOCK_FILENAME, RunLock
from provisioner.state.models import ResumePoint, StepRecord
from provisioner.state.store import (
    FileStateStore,
    MemoryStateStore,
    StateStore,
    atomic_write_text,
)

__all__ = [
    "FileStateStore",
    "KEY_PATTERN",
    "LOCK_FILENAME",
    "MemoryStateStore",
    "ResumePoint",
    "RunLock",
    "StateStore",
    "StepKey",
    "StepRecord",
    "atomic_write_text",
    "unit_key",
    "validate_key",
]
