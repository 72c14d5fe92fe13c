"""Typed records persisted by the fixloop defect store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def archive_branch_name(prefix: str, defect_id: int) -> str:
    """Return the deterministic WIP archive branch for ``defect_id``."""
    return f"{prefix}{defect_id}"


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class DefectState(str, Enum):
    """Lifecycle states for a defect."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"


class AttemptOutcome(str, Enum):
    """How a single remediation attempt ended."""

    AGENT_FAILED = "AGENT_FAILED"
    TEST_FAILED = "TEST_FAILED"
    TEST_TIMEOUT = "TEST_TIMEOUT"
    SUCCEEDED = "SUCCEEDED"


class Defect(RecordModel):
    """Tracked unit of remediation for a failing test condition."""

    id: int
    title: str
    body: str = ""
    labels: List[str] = Field(default_factory=list)
    state: DefectState = DefectState.OPEN
    dedup_key: str
    archive_branch: str = ""
    lease_holder: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.state == DefectState.OPEN

    def lease_active(self, now: datetime) -> bool:
        """Return ``True`` when someone holds an unexpired lease at ``now``."""
        if not self.lease_holder or self.lease_expires_at is None:
            return False
        return self.lease_expires_at > now


class DefectComment(RecordModel):
    """Append-only note attached to a defect."""

    id: int
    defect_id: int
    body: str
    created_at: datetime = Field(default_factory=utc_now)


class Attempt(RecordModel):
    """One pass through the fix/gate cycle for a defect."""

    defect_id: int
    ordinal: int = Field(ge=1)
    outcome: AttemptOutcome
    change_ref: Optional[str] = None
    base_ref: Optional[str] = None
    archive_ref: Optional[str] = None
    detail: str = ""
    created_at: datetime = Field(default_factory=utc_now)


class TestRunRecord(RecordModel):
    """Persisted copy of a classified test invocation."""

    __test__ = False

    id: str
    scope: str
    classification: str
    exit_code: Optional[int] = None
    command: str = ""
    output: str = ""
    duration: float = 0.0
    defect_id: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
