"""Bulk-job engine: registry, background runner, durable lanes and façade."""
from .facade import GatewayUnavailableError, JobFacade, JobNotFoundError
from .gateway import DurableQueueGateway, LaneConfig, LaneJobContext, UnknownLaneError
from .item_loop import AbortJob, CancellationToken, ItemFailure, JobCancelled, run_items
from .models import JobRecord, JobStatus, JobView, QueueJobStatus, QueueState
from .queue_store import QueueStore
from .registry import JobRegistry, RetentionPolicy
from .estimator import TimeEstimator
from .runner import ActiveJobExistsError, BackgroundRunner

__all__ = [
    "AbortJob",
    "ActiveJobExistsError",
    "BackgroundRunner",
    "CancellationToken",
    "DurableQueueGateway",
    "GatewayUnavailableError",
    "ItemFailure",
    "JobCancelled",
    "JobFacade",
    "JobNotFoundError",
    "JobRecord",
    "JobRegistry",
    "JobStatus",
    "JobView",
    "LaneConfig",
    "LaneJobContext",
    "QueueJobStatus",
    "QueueState",
    "QueueStore",
    "RetentionPolicy",
    "TimeEstimator",
    "UnknownLaneError",
    "run_items",
]
