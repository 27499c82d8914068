"""Singleton dependency providers for FastAPI ``Depends()``."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from ..config import ApiSettings, RuntimeConfig

_settings: Optional[ApiSettings] = None


def get_settings() -> ApiSettings:
    global _settings
    if _settings is None:
        _settings = ApiSettings()
    return _settings


def use_settings(settings: Optional[ApiSettings]) -> None:
    """Make ``settings`` the process-wide settings used by every provider.

    ``None`` falls back to loading from the environment on next use.
    """
    global _settings
    _settings = settings


@lru_cache
def get_runtime_config() -> RuntimeConfig:
    return RuntimeConfig()


# Lazy singletons, initialised at first call rather than import time
# so the event loop is already running when async resources are needed.

_job_registry = None
_job_runner = None
_queue_store = None
_gateway = None
_job_facade = None


def get_job_registry():
    """Return the singleton ``JobRegistry``."""
    global _job_registry
    if _job_registry is None:
        from ..jobs.registry import JobRegistry, RetentionPolicy

        capacity = get_settings().registry_capacity
        retention = None
        if capacity is not None:
            base = RetentionPolicy.from_config()
            retention = RetentionPolicy(capacity=capacity, max_age_seconds=base.max_age_seconds)
        _job_registry = JobRegistry(retention)
    return _job_registry


def get_job_runner():
    """Return the singleton ``BackgroundRunner``."""
    global _job_runner
    if _job_runner is None:
        from ..jobs.runner import BackgroundRunner

        _job_runner = BackgroundRunner(get_job_registry())
    return _job_runner


def get_queue_store():
    """Return the singleton ``QueueStore``."""
    global _queue_store
    if _queue_store is None:
        from ..jobs.queue_store import QueueStore

        _queue_store = QueueStore(get_settings().queue_db_path)
    return _queue_store


def get_gateway():
    """Return the singleton ``DurableQueueGateway``.

    Lanes are attached by the host application with ``register_lane``
    before the app starts; the lifespan only starts and stops workers.
    """
    global _gateway
    if _gateway is None:
        from ... import config as _cfg
        from ..jobs.gateway import DurableQueueGateway

        _gateway = DurableQueueGateway(
            get_queue_store(), poll_interval_seconds=_cfg.QUEUE_POLL_INTERVAL_SECONDS,
        )
    return _gateway


def get_job_facade():
    """Return the singleton ``JobFacade``."""
    global _job_facade
    if _job_facade is None:
        from ..jobs.facade import JobFacade

        _job_facade = JobFacade(get_job_registry(), get_job_runner(), get_gateway())
    return _job_facade


def reset_providers() -> None:
    """Forget every singleton.  Used between app instances in tests."""
    global _job_registry, _job_runner, _queue_store, _gateway, _job_facade
    _job_registry = _job_runner = _queue_store = _gateway = _job_facade = None
