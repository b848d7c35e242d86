"""Persisted state records.

A :class:`StepRecord` is the durable proof that a unit (or a unit's
sub-step) finished successfully.  A :class:`ResumePoint` remembers
where to pick up after a reboot checkpoint.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    """Current UTC time in ISO-8601."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# StepRecord
# ---------------------------------------------------------------------------


class StepRecord(BaseModel):
    """Completion marker for one key.

    Attributes:
        key: Stable completion key, e.g. ``01-init/00-system-init.sh``.
        completed: Always ``True`` for records written by ``set``.
        timestamp: ISO-8601 UTC time of the most recent ``set``.
        fingerprint: Content hash of the unit script at completion time,
            when the unit is script-backed.
    """

    key: str
    completed: bool = True
    timestamp: str = Field(default_factory=utc_now_iso)
    fingerprint: Optional[str] = None

    def to_sorted_json(self, indent: int = 2) -> str:
        """Serialise with sorted keys for deterministic output."""
        return json.dumps(self.model_dump(mode="json"), indent=indent, sort_keys=True)


# ---------------------------------------------------------------------------
# ResumePoint
# ---------------------------------------------------------------------------


class ResumePoint(BaseModel):
    """Where a run stopped for a reboot checkpoint."""

    phase: str
    next_unit: Optional[str] = None
    reason: str = ""
    saved_at: str = Field(default_factory=utc_now_iso)

    def to_sorted_json(self, indent: int = 2) -> str:
        """Serialise with sorted keys for deterministic output."""
        return json.dumps(self.model_dump(mode="json"), indent=indent, sort_keys=True)
