"""Job data models."""
from __future__ import annotations

import enum
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    """Opaque, unique id whose lexical order follows creation time."""
    return f"job_{time.time_ns():016x}_{uuid.uuid4().hex[:8]}"


class JobStatus(str, enum.Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PROCESSING


class ErrorEntry(BaseModel):
    """One per-item failure kept in a job's bounded error log."""

    item_label: str
    message: str
    position: Optional[int] = None


class JobProgress(BaseModel):
    """Fixed progress struct shared by every job kind.

    Kind-specific fields go in ``extra``; they are never merged into
    the counters.
    """

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[ErrorEntry] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)
    extra: Dict[str, Any] = Field(default_factory=dict)


class ProgressDelta(BaseModel):
    """Increments folded into a running job by ``JobRegistry.update_progress``."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[ErrorEntry] = Field(default_factory=list)
    extra: Dict[str, Any] = Field(default_factory=dict)


class JobOutcome(BaseModel):
    """Final tallies handed to ``JobRegistry.complete``."""

    succeeded: int
    failed: int
    errors: List[ErrorEntry] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)


class JobRecord(BaseModel):
    """In-memory representation of one bulk operation."""

    job_id: str = Field(default_factory=new_job_id)
    owner_id: str
    kind: str
    status: JobStatus = JobStatus.PROCESSING
    progress: JobProgress = Field(default_factory=JobProgress)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def progress_percent(self) -> int:
        if self.status is JobStatus.COMPLETED:
            return 100
        total = self.progress.total
        if total <= 0:
            return 0
        return round(self.progress.processed / total * 100)

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or utc_now()
        return (end - self.started_at).total_seconds()


class JobView(BaseModel):
    """Read model returned to pollers."""

    job_id: str
    owner_id: str
    kind: str
    status: JobStatus
    progress_percent: int
    total: int
    processed: int
    succeeded: int
    failed: int
    errors: List[ErrorEntry]
    summary: Dict[str, Any] = Field(default_factory=dict)
    extra: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float
    error: Optional[str] = None

    @classmethod
    def from_record(cls, rec: JobRecord) -> "JobView":
        p = rec.progress
        return cls(
            job_id=rec.job_id,
            owner_id=rec.owner_id,
            kind=rec.kind,
            status=rec.status,
            progress_percent=rec.progress_percent,
            total=p.total,
            processed=p.processed,
            succeeded=p.succeeded,
            failed=p.failed,
            errors=list(p.errors),
            summary=dict(p.summary),
            extra=dict(p.extra),
            started_at=rec.started_at,
            completed_at=rec.completed_at,
            duration_seconds=rec.duration_seconds,
            error=rec.error,
        )


# ── Durable queue ────────────────────────────────────────────────────


class QueueState(str, enum.Enum):
    waiting = "waiting"
    active = "active"
    completed = "completed"
    failed = "failed"


class EnqueueResult(BaseModel):
    job_id: str
    lane: str
    status: str = "queued"
    message: str = ""


class QueueJobStatus(BaseModel):
    """Broker-side view of one durable lane job."""

    job_id: str
    lane: str
    owner_id: str
    status: QueueState
    progress: int = 0
    attempts_made: int = 0
    max_attempts: int = 1
    result: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None
    created_at: str
    processed_at: Optional[str] = None
    completed_at: Optional[str] = None
