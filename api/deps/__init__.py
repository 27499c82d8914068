"""Dependency injection providers."""
from .auth import require_auth
from .providers import (
    get_gateway,
    get_job_facade,
    get_job_registry,
    get_job_runner,
    get_queue_store,
    get_runtime_config,
    get_settings,
)

__all__ = [
    "get_gateway",
    "get_job_facade",
    "get_job_registry",
    "get_job_runner",
    "get_queue_store",
    "get_runtime_config",
    "get_settings",
    "require_auth",
]
