"""Sequential per-item loop shared by the background runner and lane workers."""
from __future__ import annotations

import asyncio
import inspect
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from .models import ErrorEntry

ProcessItem = Callable[[Any], Union[Any, Awaitable[Any]]]
LabelItem = Callable[[Any, int], str]
ItemCallback = Callable[[Optional[ErrorEntry]], Awaitable[None]]
BatchCallback = Callable[["ItemTally"], Awaitable[None]]

# Keys tried, in order, when naming an item in the error log.
_LABEL_KEYS = (
    "title",
    "sku",
    "sub_sku",
    "subSku",
    "group_sku",
    "groupSku",
    "product_id",
    "productId",
    "id",
)


class ItemFailure(Exception):
    """Typed per-item failure a processor may raise.

    Recorded in the job's error log; never aborts the job.
    """

    def __init__(self, message: str, label: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.label = label


class AbortJob(Exception):
    """Raised by a processor to abort the whole job instead of one item."""


class JobCancelled(Exception):
    """Raised by job functions when cooperative cancellation is detected."""


class CancellationToken:
    """Cooperative cancellation flag checked once per item.

    Setting it never interrupts an in-flight processor call; the loop
    observes it before starting the next item.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled("Job cancelled by user")


def default_label(item: Any, position: int) -> str:
    """Best human-readable name for ``item``."""
    if isinstance(item, Mapping):
        for key in _LABEL_KEYS:
            value = item.get(key)
            if value not in (None, ""):
                return str(value)
        return "unknown"
    if isinstance(item, (str, int)):
        return str(item)
    return "unknown"


@dataclass
class ItemTally:
    """Running outcome of one pass over a job's items."""

    total: int
    error_limit: int = 20
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    first_errors: List[ErrorEntry] = field(default_factory=list)
    cancelled: bool = False

    def record(self, error: Optional[ErrorEntry]) -> None:
        self.processed += 1
        if error is None:
            self.succeeded += 1
            return
        self.failed += 1
        if len(self.first_errors) < self.error_limit:
            self.first_errors.append(error)

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return round(self.processed / self.total * 100)

    def summary(self) -> dict:
        rate = round(self.succeeded / self.total * 100) if self.total else 0
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "success_rate": rate,
        }


async def _call(process_item: ProcessItem, item: Any) -> Any:
    result = process_item(item)
    if inspect.isawaitable(result):
        result = await result
    return result


async def run_items(
    items: Sequence[Any],
    process_item: ProcessItem,
    *,
    batch_size: int,
    batch_pause_seconds: float = 0.0,
    label_item: Optional[LabelItem] = None,
    token: Optional[CancellationToken] = None,
    on_item: Optional[ItemCallback] = None,
    on_batch: Optional[BatchCallback] = None,
    error_limit: int = 20,
) -> ItemTally:
    """Run ``process_item`` over ``items`` strictly in order, one at a time.

    Per-item exceptions become ``ErrorEntry`` data.  ``AbortJob`` and
    ``JobCancelled`` propagate to the caller.  ``on_item`` fires after
    every item with the item's error (or ``None``); ``on_batch`` after
    every batch.  Between batches the loop sleeps ``batch_pause_seconds``
    so other tasks get the event loop.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    label_item = label_item or default_label
    tally = ItemTally(total=len(items), error_limit=error_limit)

    for start in range(0, len(items), batch_size):
        for position in range(start, min(start + batch_size, len(items))):
            if token is not None and token.is_cancelled:
                tally.cancelled = True
                return tally
            item = items[position]
            error: Optional[ErrorEntry] = None
            try:
                await _call(process_item, item)
            except (AbortJob, JobCancelled):
                raise
            except ItemFailure as exc:
                error = ErrorEntry(
                    item_label=exc.label or label_item(item, position),
                    message=exc.message,
                    position=position,
                )
            except Exception as exc:  # noqa: BLE001
                error = ErrorEntry(
                    item_label=label_item(item, position),
                    message=str(exc) or type(exc).__name__,
                    position=position,
                )
            tally.record(error)
            if on_item is not None:
                await on_item(error)

        if on_batch is not None:
            await on_batch(tally)
        if start + batch_size < len(items):
            await asyncio.sleep(batch_pause_seconds)

    return tally
