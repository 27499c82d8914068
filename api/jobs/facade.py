"""Single entry point for submitting, polling and cancelling bulk jobs."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from .estimator import TimeEstimator
from .gateway import DurableQueueGateway
from .item_loop import LabelItem, ProcessItem
from .models import EnqueueResult, JobView, QueueJobStatus
from .registry import JobRegistry
from .runner import BackgroundRunner

logger = logging.getLogger(__name__)


class JobNotFoundError(Exception):
    """Requested job ID does not exist."""


class GatewayUnavailableError(RuntimeError):
    """A durable-lane operation was called on a façade built without a gateway."""


class JobFacade:
    """Get, list and cancel over the registry, plus the two submit paths.

    Authorization is the caller's job: ``JobView.owner_id`` is exposed
    so request handlers can compare it with the requesting user.
    """

    def __init__(
        self,
        registry: JobRegistry,
        runner: BackgroundRunner,
        gateway: Optional[DurableQueueGateway] = None,
        estimator: Optional[TimeEstimator] = None,
    ) -> None:
        self.registry = registry
        self.runner = runner
        self.gateway = gateway
        self.estimator = estimator or TimeEstimator()

    # ── Submit ───────────────────────────────────────────────────────

    def submit_background(
        self,
        owner_id: str,
        kind: str,
        items: Iterable[Any],
        process_item: ProcessItem,
        batch_size: Optional[int] = None,
        *,
        label_item: Optional[LabelItem] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        return self.runner.submit(
            owner_id, kind, items, process_item, batch_size, label_item=label_item, extra=extra,
        )

    async def enqueue_durable(self, lane: str, owner_id: str, payload: Dict[str, Any]) -> EnqueueResult:
        return await self._require_gateway().enqueue(lane, owner_id, payload)

    # ── Read ─────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> JobView:
        """Current view of ``job_id``.

        Raises
        ------
        JobNotFoundError
            If the id was never created or has been evicted.
        """
        rec = self.registry.get(job_id)
        if rec is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return JobView.from_record(rec)

    def list_jobs(self, owner_id: Optional[str] = None, kind_prefix: str = "") -> List[JobView]:
        """Jobs newest first; ``owner_id=None`` lists every owner."""
        return [JobView.from_record(r) for r in self.registry.list_by_kind_prefix(owner_id, kind_prefix)]

    async def get_queue_status(self, lane: str, job_id: str) -> QueueJobStatus:
        status = await self._require_gateway().get_status(lane, job_id)
        if status is None:
            raise JobNotFoundError(f"Job {job_id} not found in lane {lane}")
        return status

    def estimate(self, item_count: int, operation: str = "product") -> str:
        return self.estimator.estimate(item_count, operation)

    # ── Cancel ───────────────────────────────────────────────────────

    async def cancel_job(self, job_id: str, requested_by: str) -> bool:
        """Request cancellation of ``job_id``.

        Returns True when a running in-process job accepted the request;
        it reaches CANCELLED at its next checkpoint.  A request accepted
        while the last item is in flight finds no checkpoint after it, and
        the job ends COMPLETED.  Returns False for a terminal job or a
        durable lane job, which has no checkpoint.

        Raises
        ------
        JobNotFoundError
            If no registry record or lane job has this id.
        """
        rec = self.registry.get(job_id)
        if rec is None:
            if self.gateway is not None and await self.gateway.find(job_id) is not None:
                logger.info("Cancel of lane job %s by %s rejected: lane jobs are not cancellable",
                            job_id, requested_by)
                return False
            raise JobNotFoundError(f"Job {job_id} not found")
        if rec.status.is_terminal:
            logger.info("Cancel of job %s by %s ignored: already %s", job_id, requested_by, rec.status.value)
            return False
        accepted = self.runner.cancel(job_id)
        if accepted:
            logger.info("Cancellation of job %s requested by %s", job_id, requested_by)
        else:
            logger.info("Cancel of job %s by %s rejected: no cancellation token", job_id, requested_by)
        return accepted

    def _require_gateway(self) -> DurableQueueGateway:
        if self.gateway is None:
            raise GatewayUnavailableError("No durable queue gateway is configured")
        return self.gateway
