"""In-process background runner with cooperative cancellation and SSE event streaming."""
from __future__ import annotations

import asyncio
import inspect
import logging
import traceback
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Iterable, Optional, Union

from .item_loop import (
    AbortJob,
    CancellationToken,
    ItemTally,
    JobCancelled,
    LabelItem,
    ProcessItem,
    run_items,
)
from .models import ErrorEntry, JobOutcome, JobView, ProgressDelta
from .registry import JobRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "AbortJob",
    "ActiveJobExistsError",
    "BackgroundRunner",
    "JobCancelled",
    "ProgressReporter",
]


class ActiveJobExistsError(Exception):
    """Raised when an owner already has a job in progress and exclusivity is on."""


class ProgressReporter:
    """Handle given to ``submit_custom`` functions to report their own progress."""

    def __init__(self, runner: "BackgroundRunner", job_id: str, total: int, token: CancellationToken) -> None:
        self._runner = runner
        self.job_id = job_id
        self.token = token
        self.tally = ItemTally(total=total, error_limit=runner.registry.final_error_limit)

    def checkpoint(self) -> None:
        """Raise ``JobCancelled`` if cancellation was requested."""
        self.token.raise_if_cancelled()

    def _has_room(self) -> bool:
        if self.tally.processed < self.tally.total:
            return True
        logger.warning(
            "Job %s reported more than its %d declared items; ignoring the extra report",
            self.job_id, self.tally.total,
        )
        return False

    def item_succeeded(self) -> None:
        if not self._has_room():
            return
        self.tally.record(None)
        self._runner.registry.update_progress(self.job_id, ProgressDelta(processed=1, succeeded=1))

    def item_failed(self, label: str, message: str) -> None:
        if not self._has_room():
            return
        entry = ErrorEntry(item_label=label, message=message, position=self.tally.processed)
        self.tally.record(entry)
        self._runner.registry.update_progress(
            self.job_id, ProgressDelta(processed=1, failed=1, errors=[entry])
        )

    def set_extra(self, **fields: Any) -> None:
        self._runner.registry.update_progress(self.job_id, ProgressDelta(extra=fields))


CustomJob = Callable[[ProgressReporter], Union[Any, Awaitable[Any]]]


class BackgroundRunner:
    """Drives a job's items through a processor on the running event loop.

    ``submit`` returns the job id before the spawned task first runs.
    Items of one job are processed strictly one after another; separate
    jobs interleave at the loop's suspension points.
    """

    def __init__(
        self,
        registry: JobRegistry,
        batch_size: Optional[int] = None,
        batch_pause_seconds: Optional[float] = None,
        exclusive_per_owner: Optional[bool] = None,
    ) -> None:
        self.registry = registry
        self._batch_size = batch_size
        self._batch_pause_seconds = batch_pause_seconds
        self._exclusive_per_owner = exclusive_per_owner
        self._active_tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._event_subscribers: Dict[str, list] = {}

    # ── Settings (explicit value, else live config) ──────────────────

    @property
    def batch_size(self) -> int:
        if self._batch_size is not None:
            return self._batch_size
        from ... import config as _cfg

        return _cfg.DEFAULT_BATCH_SIZE

    @property
    def batch_pause_seconds(self) -> float:
        if self._batch_pause_seconds is not None:
            return self._batch_pause_seconds
        from ... import config as _cfg

        return _cfg.BATCH_PAUSE_SECONDS

    @property
    def exclusive_per_owner(self) -> bool:
        if self._exclusive_per_owner is not None:
            return self._exclusive_per_owner
        from ... import config as _cfg

        return _cfg.EXCLUSIVE_JOB_PER_OWNER

    @property
    def pending_count(self) -> int:
        """Number of jobs still running."""
        return len(self._active_tasks)

    # ── Submit & Run ─────────────────────────────────────────────────

    def submit(
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
        """Create a job for ``items`` and process them in the background.

        Must be called with an event loop running.

        Raises
        ------
        ActiveJobExistsError
            If exclusivity is on and ``owner_id`` already has a job in progress.
        """
        items = list(items)
        batch_size = batch_size or self.batch_size
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._check_exclusive(owner_id)

        job_id = self.registry.create(owner_id, kind, len(items), extra=extra)
        if not items:
            tally = ItemTally(total=0)
            self.registry.complete(job_id, JobOutcome(succeeded=0, failed=0, summary=tally.summary()))
            return job_id

        token = CancellationToken()
        self._tokens[job_id] = token
        self._active_tasks[job_id] = asyncio.create_task(
            self._run(job_id, items, process_item, batch_size, label_item, token),
            name=f"bulk-job:{job_id}",
        )
        return job_id

    def submit_custom(self, owner_id: str, kind: str, total: int, fn: CustomJob) -> str:
        """Run ``fn(reporter)`` in the background; ``fn`` reports its own progress.

        A dict returned by ``fn`` is merged into the job summary.
        """
        self._check_exclusive(owner_id)
        job_id = self.registry.create(owner_id, kind, total)
        token = CancellationToken()
        self._tokens[job_id] = token
        reporter = ProgressReporter(self, job_id, total, token)
        self._active_tasks[job_id] = asyncio.create_task(
            self._run_custom(job_id, fn, reporter),
            name=f"custom-job:{job_id}",
        )
        return job_id

    def _check_exclusive(self, owner_id: str) -> None:
        if not self.exclusive_per_owner:
            return
        active = self.registry.active_job_for(owner_id)
        if active is not None:
            raise ActiveJobExistsError(
                f"You already have an active background job ({active.kind}) running. "
                f"Please wait for it to complete. Check status: {active.job_id}"
            )

    async def _run(
        self,
        job_id: str,
        items: list,
        process_item: ProcessItem,
        batch_size: int,
        label_item: Optional[LabelItem],
        token: CancellationToken,
    ) -> None:
        await self._emit(job_id, {"event": "started", "job_id": job_id})
        processed = 0

        async def _on_item(error: Optional[ErrorEntry]) -> None:
            nonlocal processed
            processed += 1
            if error is None:
                delta = ProgressDelta(processed=1, succeeded=1)
            else:
                delta = ProgressDelta(processed=1, failed=1, errors=[error])
            self.registry.update_progress(job_id, delta)
            await self._emit(job_id, {"event": "progress", "job_id": job_id, "processed": processed})

        try:
            tally = await run_items(
                items,
                process_item,
                batch_size=batch_size,
                batch_pause_seconds=self.batch_pause_seconds,
                label_item=label_item,
                token=token,
                on_item=_on_item,
                error_limit=self.registry.final_error_limit,
            )
            await self._finish(job_id, tally)
        except (asyncio.CancelledError, JobCancelled):
            self.registry.cancel(job_id)
            await self._emit(job_id, {"event": "cancelled", "job_id": job_id})
        except Exception as exc:
            await self._abort(job_id, exc)
        finally:
            self._active_tasks.pop(job_id, None)
            self._tokens.pop(job_id, None)
            await self._emit(job_id, {"event": "done", "job_id": job_id})

    async def _run_custom(self, job_id: str, fn: CustomJob, reporter: ProgressReporter) -> None:
        await self._emit(job_id, {"event": "started", "job_id": job_id})
        try:
            result = fn(reporter)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, dict):
                tally = reporter.tally
                summary = {**tally.summary(), **result}
                self.registry.complete(
                    job_id,
                    JobOutcome(
                        succeeded=tally.succeeded,
                        failed=tally.failed,
                        errors=tally.first_errors,
                        summary=summary,
                    ),
                )
                await self._emit(job_id, {"event": "completed", "job_id": job_id})
            else:
                await self._finish(job_id, reporter.tally)
        except (asyncio.CancelledError, JobCancelled):
            self.registry.cancel(job_id)
            await self._emit(job_id, {"event": "cancelled", "job_id": job_id})
        except Exception as exc:
            await self._abort(job_id, exc)
        finally:
            self._active_tasks.pop(job_id, None)
            self._tokens.pop(job_id, None)
            await self._emit(job_id, {"event": "done", "job_id": job_id})

    async def _finish(self, job_id: str, tally: ItemTally) -> None:
        if tally.cancelled:
            self.registry.cancel(job_id)
            await self._emit(job_id, {"event": "cancelled", "job_id": job_id})
            return
        self.registry.complete(
            job_id,
            JobOutcome(
                succeeded=tally.succeeded,
                failed=tally.failed,
                errors=tally.first_errors,
                summary=tally.summary(),
            ),
        )
        logger.info(
            "Job %s finished: %d succeeded, %d failed of %d",
            job_id, tally.succeeded, tally.failed, tally.total,
        )
        await self._emit(job_id, {"event": "completed", "job_id": job_id})

    async def _abort(self, job_id: str, exc: BaseException) -> None:
        if isinstance(exc, AbortJob):
            logger.warning("Job %s aborted by processor: %s", job_id, exc)
        else:
            logger.error("Job %s failed: %s\n%s", job_id, exc, traceback.format_exc())
        reason = str(exc) or type(exc).__name__
        self.registry.fail(job_id, reason)
        await self._emit(job_id, {"event": "failed", "job_id": job_id, "error": reason})

    # ── Cancel ───────────────────────────────────────────────────────

    def owns(self, job_id: str) -> bool:
        """True while this runner is driving ``job_id``."""
        return job_id in self._tokens

    def cancel(self, job_id: str) -> bool:
        """Request cooperative cancellation.

        Sets the job's token; the loop stops before its next item.  A
        processor call already in flight runs to completion.  Returns
        False if this runner is not driving the job.
        """
        token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        return True

    async def shutdown(self) -> None:
        """Cancel every in-flight task and wait for them to settle."""
        tasks = list(self._active_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Background runner stopped %d in-flight jobs", len(tasks))

    # ── SSE Event Streaming ──────────────────────────────────────────

    async def subscribe_events(self, job_id: str) -> AsyncGenerator[Dict[str, Any], None]:
        """Yield SSE events for a job until it is done."""
        queue: asyncio.Queue = asyncio.Queue()
        self._event_subscribers.setdefault(job_id, []).append(queue)
        try:
            # Send current state as first event
            rec = self.registry.get(job_id)
            if rec is None:
                return
            yield {"event": "status", "data": JobView.from_record(rec).model_dump(mode="json")}
            if rec.status.is_terminal:
                yield {"event": "done", "job_id": job_id}
                return

            while True:
                event = await queue.get()
                yield event
                if event.get("event") == "done":
                    break
        finally:
            subs = self._event_subscribers.get(job_id, [])
            if queue in subs:
                subs.remove(queue)
            if not subs:
                self._event_subscribers.pop(job_id, None)

    async def _emit(self, job_id: str, event: Dict[str, Any]) -> None:
        for q in self._event_subscribers.get(job_id, []):
            await q.put(event)
