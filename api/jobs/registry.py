"""Process-local registry of job records with bounded retention."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .models import (
    JobOutcome,
    JobProgress,
    JobRecord,
    JobStatus,
    ProgressDelta,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """How many records the registry keeps, and for how long.

    Past ``capacity`` the oldest-started record is evicted regardless of
    status.  ``max_age_seconds`` prunes terminal records only.
    """

    capacity: int = 100
    max_age_seconds: Optional[float] = None

    @classmethod
    def from_config(cls) -> "RetentionPolicy":
        from ... import config as _cfg

        return cls(capacity=_cfg.JOB_REGISTRY_CAPACITY, max_age_seconds=_cfg.JOB_MAX_AGE_SECONDS)


class JobRegistry:
    """In-memory job store shared by every execution path in the process.

    Every mutation runs under one lock, so increments from interleaved
    tasks or threads are never lost.  Reads return deep copies; callers
    cannot mutate a stored record behind the lock.
    """

    def __init__(
        self,
        retention: Optional[RetentionPolicy] = None,
        error_log_size: Optional[int] = None,
        final_error_limit: Optional[int] = None,
    ) -> None:
        self._retention = retention
        self._error_log_size = error_log_size
        self._final_error_limit = final_error_limit
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    # ── Settings (explicit value, else live config) ──────────────────

    @property
    def retention(self) -> RetentionPolicy:
        return self._retention or RetentionPolicy.from_config()

    @property
    def error_log_size(self) -> int:
        if self._error_log_size is not None:
            return self._error_log_size
        from ... import config as _cfg

        return _cfg.ERROR_LOG_SIZE

    @property
    def final_error_limit(self) -> int:
        if self._final_error_limit is not None:
            return self._final_error_limit
        from ... import config as _cfg

        return _cfg.FINAL_ERROR_LIMIT

    # ── Lifecycle ────────────────────────────────────────────────────

    def create(
        self,
        owner_id: str,
        kind: str,
        total: int,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Allocate a PROCESSING record and return its id."""
        if total < 0:
            raise ValueError(f"total must be >= 0, got {total}")
        rec = JobRecord(
            owner_id=owner_id,
            kind=kind,
            progress=JobProgress(total=total, extra=dict(extra or {})),
        )
        with self._lock:
            self._prune_expired()
            self._jobs[rec.job_id] = rec
            self._evict_over_capacity()
        logger.info("Job %s created (owner=%s kind=%s total=%d)", rec.job_id, owner_id, kind, total)
        return rec.job_id

    def update_progress(self, job_id: str, delta: ProgressDelta) -> None:
        """Fold ``delta`` into a running job.  Unknown or finished ids are ignored."""
        with self._lock:
            rec = self._jobs.get(job_id)
            if rec is None or rec.status.is_terminal:
                logger.debug("Progress update for unknown or finished job %s dropped", job_id)
                return
            p = rec.progress
            processed = p.processed + delta.processed
            if processed > p.total:
                logger.warning(
                    "Job %s reported %d processed of %d total; clamping", job_id, processed, p.total
                )
                processed = p.total
            p.processed = processed
            # succeeded + failed never exceeds processed.
            room = max(processed - p.succeeded - p.failed, 0)
            succeeded = min(delta.succeeded, room)
            p.succeeded += succeeded
            p.failed += min(delta.failed, room - succeeded)
            if delta.errors:
                p.errors = (p.errors + list(delta.errors))[-self.error_log_size:]
            if delta.extra:
                p.extra.update(delta.extra)

    def complete(self, job_id: str, final: Optional[JobOutcome] = None) -> bool:
        """Mark a job COMPLETED with its final tallies."""
        with self._lock:
            rec = self._running(job_id)
            if rec is None:
                return False
            if final is not None:
                p = rec.progress
                p.succeeded = min(final.succeeded, p.total)
                p.failed = min(final.failed, p.total - p.succeeded)
                p.processed = max(p.processed, p.succeeded + p.failed)
                p.errors = list(final.errors[: self.final_error_limit])
                p.summary = dict(final.summary)
            rec.status = JobStatus.COMPLETED
            rec.completed_at = utc_now()
        logger.info("Job %s completed", job_id)
        return True

    def fail(self, job_id: str, reason: str) -> bool:
        """Mark a job FAILED after an orchestration-level fault."""
        with self._lock:
            rec = self._running(job_id)
            if rec is None:
                return False
            rec.status = JobStatus.FAILED
            rec.error = reason
            rec.completed_at = utc_now()
        logger.warning("Job %s failed: %s", job_id, reason)
        return True

    def cancel(self, job_id: str) -> bool:
        """Mark a job CANCELLED, keeping its partial tallies."""
        with self._lock:
            rec = self._running(job_id)
            if rec is None:
                return False
            rec.status = JobStatus.CANCELLED
            rec.completed_at = utc_now()
            processed = rec.progress.processed
        logger.info("Job %s cancelled after %d items", job_id, processed)
        return True

    # ── Reads ────────────────────────────────────────────────────────

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            self._prune_expired()
            rec = self._jobs.get(job_id)
            return rec.model_copy(deep=True) if rec is not None else None

    def list_by_owner(self, owner_id: str) -> List[JobRecord]:
        return self.list_by_kind_prefix(owner_id, "")

    def list_by_kind_prefix(self, owner_id: Optional[str], prefix: str) -> List[JobRecord]:
        """Jobs whose kind starts with ``prefix``, newest first.

        ``owner_id=None`` lists every owner; the caller is responsible for
        restricting that view to administrators.
        """
        with self._lock:
            self._prune_expired()
            matches = [
                rec.model_copy(deep=True)
                for rec in self._jobs.values()
                if (owner_id is None or rec.owner_id == owner_id) and rec.kind.startswith(prefix)
            ]
        matches.sort(key=lambda r: (r.started_at, r.job_id), reverse=True)
        return matches

    def list_all(self) -> List[JobRecord]:
        return self.list_by_kind_prefix(None, "")

    def active_job_for(self, owner_id: str) -> Optional[JobRecord]:
        """The owner's PROCESSING job, if any."""
        with self._lock:
            for rec in self._jobs.values():
                if rec.owner_id == owner_id and rec.status is JobStatus.PROCESSING:
                    return rec.model_copy(deep=True)
        return None

    def stats(self) -> Dict[str, int]:
        with self._lock:
            out = {"total": len(self._jobs)}
            for status in JobStatus:
                out[status.value.lower()] = 0
            for rec in self._jobs.values():
                out[rec.status.value.lower()] += 1
        return out

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    # ── Helpers (lock held) ──────────────────────────────────────────

    def _running(self, job_id: str) -> Optional[JobRecord]:
        rec = self._jobs.get(job_id)
        if rec is None:
            logger.debug("Job %s is not in the registry", job_id)
            return None
        if rec.status.is_terminal:
            logger.debug("Job %s already %s", job_id, rec.status.value)
            return None
        return rec

    def _evict_over_capacity(self) -> None:
        while len(self._jobs) > self.retention.capacity:
            oldest = min(self._jobs.values(), key=lambda r: (r.started_at, r.job_id))
            del self._jobs[oldest.job_id]
            logger.info(
                "Evicted job %s (%s) to stay within capacity %d",
                oldest.job_id, oldest.status.value, self.retention.capacity,
            )

    def _prune_expired(self) -> None:
        max_age = self.retention.max_age_seconds
        if max_age is None:
            return
        cutoff = utc_now() - timedelta(seconds=max_age)
        expired = [
            job_id
            for job_id, rec in self._jobs.items()
            if rec.completed_at is not None and rec.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug("Pruned %d expired jobs", len(expired))
