"""Durable lane queue: persisted jobs, per-lane worker pools, retry with backoff."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from .item_loop import ItemTally, LabelItem, ProcessItem, run_items
from .models import EnqueueResult, QueueJobStatus, QueueState, new_job_id, utc_now
from .queue_store import QueueStore

logger = logging.getLogger(__name__)


class UnknownLaneError(KeyError):
    """Raised when a lane name has no registered configuration."""

    def __init__(self, lane: str) -> None:
        super().__init__(lane)
        self.lane = lane

    def __str__(self) -> str:
        return f"Unknown queue lane: {self.lane}"


@dataclass(frozen=True)
class LaneConfig:
    """Static configuration of one named lane."""

    name: str
    concurrency: int = 1
    max_attempts: int = 3
    backoff_delay_seconds: float = 2.0
    batch_size: int = 100
    batch_pause_seconds: float = 0.1
    keep_completed: Optional[int] = 10
    keep_failed: Optional[int] = 5

    @classmethod
    def from_settings(cls, name: str, settings) -> "LaneConfig":
        """Build from a ``config_structured.LaneSettings``."""
        return cls(
            name=name,
            concurrency=settings.concurrency,
            max_attempts=settings.max_attempts,
            backoff_delay_seconds=settings.backoff_delay_seconds,
            batch_size=settings.batch_size,
            batch_pause_seconds=settings.batch_pause_seconds,
            keep_completed=settings.keep_completed,
            keep_failed=settings.keep_failed,
        )

    def backoff_for(self, attempts_made: int) -> float:
        """Delay before the attempt following failed attempt ``attempts_made``."""
        return self.backoff_delay_seconds * 2 ** max(attempts_made - 1, 0)


@dataclass(frozen=True)
class LaneJobContext:
    """What a lane's processor factory sees of the job it is about to run."""

    job_id: str
    lane: str
    owner_id: str
    attempt: int
    payload: Dict[str, Any]


ProcessorFactory = Callable[[LaneJobContext], ProcessItem]


@dataclass
class _Lane:
    config: LaneConfig
    factory: ProcessorFactory
    label_item: Optional[LabelItem] = None
    wake: asyncio.Event = field(default_factory=asyncio.Event)


class DurableQueueGateway:
    """Hands bulk work to persisted, named lanes.

    Each lane runs ``concurrency`` worker tasks.  A worker claims the
    oldest due ``waiting`` row, runs its ``items`` through the lane's
    processor one at a time, and writes progress to the row.  Anything
    escaping the item loop fails the attempt; the whole job is retried
    with exponential backoff until ``max_attempts`` is reached.

    A retried job re-runs every item, including ones that already
    succeeded.  Lane processors must be idempotent.
    """

    def __init__(self, store: QueueStore, poll_interval_seconds: float = 1.0) -> None:
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self._lanes: Dict[str, _Lane] = {}
        self._workers: List[asyncio.Task] = []
        self._stop_event = asyncio.Event()

    # ── Lanes ────────────────────────────────────────────────────────

    def register_lane(
        self,
        config: LaneConfig,
        process_item: Optional[ProcessItem] = None,
        label_item: Optional[LabelItem] = None,
        *,
        processor_factory: Optional[ProcessorFactory] = None,
    ) -> None:
        """Attach a processor to ``config.name``.

        Pass either ``process_item`` (used for every job) or
        ``processor_factory``, called once per attempt with the job's
        context to build the processor for that attempt.
        """
        if (process_item is None) == (processor_factory is None):
            raise ValueError("Pass exactly one of process_item or processor_factory")
        if self._workers:
            raise RuntimeError("Lanes must be registered before the gateway starts")
        factory = processor_factory or (lambda _ctx: process_item)
        self._lanes[config.name] = _Lane(config=config, factory=factory, label_item=label_item)
        logger.info(
            "Registered lane %s (concurrency=%d, attempts=%d)",
            config.name, config.concurrency, config.max_attempts,
        )

    def register_configured_lanes(self, processors: Dict[str, ProcessItem]) -> None:
        """Register each named processor under its lane settings from ``config.QUEUE_LANES``."""
        from ... import config as _cfg

        for name, process_item in processors.items():
            settings = _cfg.QUEUE_LANES.get(name)
            if settings is None:
                raise UnknownLaneError(name)
            self.register_lane(LaneConfig.from_settings(name, settings), process_item)

    @property
    def lanes(self) -> List[str]:
        return list(self._lanes)

    def lane_config(self, lane: str) -> LaneConfig:
        return self._lane(lane).config

    def _lane(self, lane: str) -> _Lane:
        try:
            return self._lanes[lane]
        except KeyError:
            raise UnknownLaneError(lane) from None

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        """Recover stalled rows and spawn the lane worker pools."""
        if self._workers:
            return
        await self.store.initialize()
        recovered = await self.store.requeue_stalled()
        if recovered:
            logger.warning("Requeued %d stalled queue jobs left active by a previous process", recovered)
        self._stop_event.clear()
        for lane in self._lanes.values():
            for i in range(lane.config.concurrency):
                task = asyncio.create_task(
                    self._worker_loop(lane, i), name=f"lane:{lane.config.name}:{i}"
                )
                self._workers.append(task)
        logger.info("Queue gateway started %d workers across %d lanes", len(self._workers), len(self._lanes))

    async def stop(self) -> None:
        """Stop all workers.

        Jobs in flight are interrupted and stay ``active`` in the store;
        the next ``start`` puts them back to ``waiting``.
        """
        if not self._workers:
            return
        logger.info("Stopping queue gateway")
        self._stop_event.set()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

    # ── Enqueue & Query ──────────────────────────────────────────────

    async def enqueue(self, lane: str, owner_id: str, payload: Dict[str, Any]) -> EnqueueResult:
        """Persist a job on ``lane``; its ``items`` are processed by a lane worker.

        Raises
        ------
        UnknownLaneError
            If no lane named ``lane`` is registered.
        ValueError
            If ``payload`` has no ``items`` list.
        """
        entry = self._lane(lane)
        if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
            raise ValueError("Queue payload must be an object with an 'items' list")
        job_id = new_job_id()
        await self.store.add(
            job_id,
            lane,
            owner_id,
            payload,
            max_attempts=entry.config.max_attempts,
            backoff_delay=entry.config.backoff_delay_seconds,
        )
        entry.wake.set()
        logger.info(
            "Queued job %s on lane %s for owner %s (%d items)",
            job_id, lane, owner_id, len(payload["items"]),
        )
        return EnqueueResult(
            job_id=job_id,
            lane=lane,
            status="queued",
            message=f"Bulk {lane} job queued successfully",
        )

    async def get_status(self, lane: str, job_id: str) -> Optional[QueueJobStatus]:
        self._lane(lane)
        row = await self.store.get(job_id)
        if row is None or row["lane"] != lane:
            return None
        return QueueStore.to_status(row)

    async def find(self, job_id: str) -> Optional[QueueJobStatus]:
        """Look ``job_id`` up in any lane."""
        row = await self.store.get(job_id)
        return QueueStore.to_status(row) if row is not None else None

    async def list_owner_jobs(self, owner_id: str) -> List[QueueJobStatus]:
        return [QueueStore.to_status(r) for r in await self.store.list_by_owner(owner_id)]

    async def stats(self) -> Dict[str, Dict[str, int]]:
        return {name: await self.store.counts(name) for name in self._lanes}

    async def cleanup(self, lane: str, max_age_seconds: float = 24 * 3600) -> int:
        """Remove finished jobs of ``lane`` created more than ``max_age_seconds`` ago."""
        self._lane(lane)
        cutoff = (utc_now() - timedelta(seconds=max_age_seconds)).isoformat(timespec="microseconds")
        removed = await self.store.remove_finished_before(lane, cutoff)
        if removed:
            logger.info("Cleaned %d finished jobs from lane %s", removed, lane)
        return removed

    # ── Workers ──────────────────────────────────────────────────────

    async def _worker_loop(self, lane: _Lane, worker_idx: int) -> None:
        name = lane.config.name
        logger.debug("Lane %s worker %d started", name, worker_idx)
        while not self._stop_event.is_set():
            lane.wake.clear()
            try:
                row = await self.store.claim_next(name)
            except Exception:
                logger.exception("Lane %s worker %d could not claim a job", name, worker_idx)
                await asyncio.sleep(self.poll_interval_seconds)
                continue
            if row is None:
                try:
                    await asyncio.wait_for(lane.wake.wait(), timeout=self.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
                continue
            try:
                await self._execute(lane, row)
            except Exception as exc:
                # A store write failed after the claim; the row must not stay active.
                logger.exception(
                    "Lane %s worker %d lost track of job %s", name, worker_idx, row["job_id"]
                )
                await self._release_row(lane, row, exc)

    async def _execute(self, lane: _Lane, row: Dict[str, Any]) -> None:
        cfg = lane.config
        job_id = row["job_id"]
        attempt = row["attempts_made"]
        max_attempts = row["max_attempts"]
        payload = row["payload"]
        logger.info("Lane %s picked up job %s (attempt %d/%d)", cfg.name, job_id, attempt, max_attempts)

        async def _on_batch(tally: ItemTally) -> None:
            await self.store.update_progress(job_id, tally.percent)

        try:
            ctx = LaneJobContext(
                job_id=job_id, lane=cfg.name, owner_id=row["owner_id"], attempt=attempt, payload=payload,
            )
            process_item = lane.factory(ctx)
            tally = await run_items(
                payload["items"],
                process_item,
                batch_size=cfg.batch_size,
                batch_pause_seconds=cfg.batch_pause_seconds,
                label_item=lane.label_item,
                on_batch=_on_batch,
                error_limit=self._final_error_limit(),
            )
        except Exception as exc:
            await self._attempt_failed(lane, job_id, attempt, max_attempts, exc)
            return

        result = {
            "job_id": job_id,
            "summary": tally.summary(),
            "errors": [e.model_dump() for e in tally.first_errors],
            "timestamp": utc_now().isoformat(),
        }
        await self.store.mark_completed(job_id, result)
        logger.info("Lane %s job %s completed: %s", cfg.name, job_id, result["summary"])
        if cfg.keep_completed is not None:
            await self.store.trim_finished(cfg.name, QueueState.completed, cfg.keep_completed)

    async def _attempt_failed(
        self, lane: _Lane, job_id: str, attempt: int, max_attempts: int, exc: Exception
    ) -> None:
        cfg = lane.config
        reason = str(exc) or type(exc).__name__
        if attempt < max_attempts:
            delay = cfg.backoff_for(attempt)
            logger.warning(
                "Lane %s job %s attempt %d/%d failed: %s; retrying in %.2fs",
                cfg.name, job_id, attempt, max_attempts, reason, delay,
            )
            await self.store.schedule_retry(job_id, reason, time.time() + delay)
            return
        logger.error(
            "Lane %s job %s failed after %d attempts: %s", cfg.name, job_id, attempt, reason,
            exc_info=exc,
        )
        await self.store.mark_failed(job_id, reason)
        if cfg.keep_failed is not None:
            await self.store.trim_finished(cfg.name, QueueState.failed, cfg.keep_failed)

    async def _release_row(self, lane: _Lane, row: Dict[str, Any], exc: Exception) -> None:
        """Count the attempt as failed after a bookkeeping error, without raising."""
        try:
            await self._attempt_failed(lane, row["job_id"], row["attempts_made"], row["max_attempts"], exc)
        except Exception:
            logger.exception(
                "Could not release job %s on lane %s; it stays active until the next start",
                row["job_id"], lane.config.name,
            )

    @staticmethod
    def _final_error_limit() -> int:
        from ... import config as _cfg

        return _cfg.FINAL_ERROR_LIMIT
