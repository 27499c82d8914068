"""
Structured configuration for the bulk-job engine using typed dataclasses.

This is the AUTHORITATIVE source of truth for all configuration values.
``config.py`` derives its flat constants from here.

Usage:
    from catalog_jobs.config_structured import get_config
    cfg = get_config()
    cfg.registry.capacity          # retention capacity of the job registry
    cfg.lanes["bulk-price"].concurrency
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


class LogFormat(Enum):
    """Log line layout used by the API process."""
    STRUCTURED = "structured"
    JSON = "json"


# ── Registry ─────────────────────────────────────────────────────────


@dataclass
class RegistryConfig:
    """Retention policy for the in-memory job registry.

    ``capacity`` bounds the number of records kept; creating one more
    evicts the oldest-started record regardless of status.
    ``max_age_seconds`` additionally prunes terminal records whose
    completion is older than the given age (``None`` disables it).
    """
    capacity: int = 100
    max_age_seconds: Optional[float] = None
    error_log_size: int = 10
    final_error_limit: int = 20

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError(f"Registry capacity must be >= 1, got {self.capacity}")
        if self.max_age_seconds is not None and self.max_age_seconds <= 0:
            raise ValueError(
                f"max_age_seconds must be positive or None, got {self.max_age_seconds}"
            )
        if self.error_log_size < 1 or self.final_error_limit < 1:
            raise ValueError("Error log bounds must be >= 1")


# ── Background runner ────────────────────────────────────────────────


@dataclass
class RunnerConfig:
    """In-process background runner defaults."""
    batch_size: int = 50
    batch_pause_seconds: float = 0.01
    exclusive_per_owner: bool = False

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.batch_pause_seconds < 0:
            raise ValueError("batch_pause_seconds cannot be negative")


# ── Durable queue ────────────────────────────────────────────────────


@dataclass
class LaneSettings:
    """Per-lane worker pool and retry policy."""
    concurrency: int = 1
    max_attempts: int = 3
    backoff_delay_seconds: float = 2.0
    batch_size: int = 100
    batch_pause_seconds: float = 0.1
    keep_completed: Optional[int] = 10
    keep_failed: Optional[int] = 5

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError(f"Lane concurrency must be >= 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_delay_seconds < 0:
            raise ValueError("backoff_delay_seconds cannot be negative")


def _default_lanes() -> Dict[str, LaneSettings]:
    return {
        "bulk-create": LaneSettings(concurrency=5, batch_size=100, batch_pause_seconds=0.1),
        "bulk-price": LaneSettings(concurrency=10, batch_size=100, batch_pause_seconds=0.05),
        "bulk-image": LaneSettings(concurrency=3, batch_size=50, batch_pause_seconds=0.1),
    }


@dataclass
class QueueConfig:
    """SQLite-backed durable queue location and polling."""
    db_path: str = "catalog_jobs_queue.db"
    poll_interval_seconds: float = 1.0


# ── Estimation ───────────────────────────────────────────────────────


@dataclass
class EstimatorConfig:
    """Throughput assumptions (items per second) used for time estimates."""
    rates: Dict[str, float] = field(default_factory=lambda: {
        "product": 2.0,
        "listing": 3.0,
        "inventory": 5.0,
        "image": 0.5,
    })
    small_batch_threshold: int = 10
    large_batch_threshold: int = 100
    small_batch_overhead: float = 1.5
    large_batch_overhead: float = 1.2


# ── Logging ──────────────────────────────────────────────────────────


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: LogFormat = LogFormat.STRUCTURED

    def __post_init__(self):
        if isinstance(self.format, str):
            self.format = LogFormat(self.format)


@dataclass
class SystemConfig:
    """Top-level configuration aggregating all subsystems."""

    registry: RegistryConfig = field(default_factory=RegistryConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    lanes: Dict[str, LaneSettings] = field(default_factory=_default_lanes)
    estimator: EstimatorConfig = field(default_factory=EstimatorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_CONFIG: Optional[SystemConfig] = None


def get_config() -> SystemConfig:
    """Return the singleton SystemConfig instance.

    On first call, instantiates the default SystemConfig. Subsequent
    calls return the same instance so all callers share one source of
    truth.
    """
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = SystemConfig()
    return _CONFIG
