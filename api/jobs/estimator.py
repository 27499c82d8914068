"""Rough duration estimates for bulk jobs, shown to users at submission time."""
from __future__ import annotations

import math
from typing import Optional

from ...config_structured import EstimatorConfig, get_config


class TimeEstimator:
    """Turns an item count into a human-readable duration.

    Rates are items per second per operation; unknown operations use the
    ``product`` rate.  Small batches pay a setup overhead, large ones a
    memory/batching overhead.
    """

    def __init__(self, config: Optional[EstimatorConfig] = None) -> None:
        self.config = config or get_config().estimator

    def rate_for(self, operation: str) -> float:
        rates = self.config.rates
        return rates.get(operation, rates["product"])

    def overhead_for(self, item_count: int) -> float:
        cfg = self.config
        if item_count <= cfg.small_batch_threshold:
            return cfg.small_batch_overhead
        if item_count <= cfg.large_batch_threshold:
            return 1.0
        return cfg.large_batch_overhead

    def estimate_seconds(self, item_count: int, operation: str = "product") -> int:
        if item_count <= 0:
            return 0
        return math.ceil(item_count / self.rate_for(operation) * self.overhead_for(item_count))

    def estimate(self, item_count: int, operation: str = "product") -> str:
        if item_count <= 0:
            return "0 seconds"
        seconds = self.estimate_seconds(item_count, operation)
        if seconds < 5:
            return "< 5 seconds"
        if seconds < 60:
            return f"{seconds} seconds"
        if seconds < 120:
            return "~1 minute"
        return f"{math.ceil(seconds / 60)} minutes"
