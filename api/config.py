"""Runtime-adjustable configuration for the API layer."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Set

from pydantic_settings import BaseSettings

from .. import config as _cfg

logger = logging.getLogger(__name__)

# Keys that may be patched at runtime via the /api/config endpoint.
_ADJUSTABLE_KEYS: Set[str] = {
    "JOB_REGISTRY_CAPACITY",
    "JOB_MAX_AGE_SECONDS",
    "DEFAULT_BATCH_SIZE",
    "BATCH_PAUSE_SECONDS",
    "ERROR_LOG_SIZE",
    "FINAL_ERROR_LIMIT",
    "EXCLUSIVE_JOB_PER_OWNER",
    "QUEUE_CLEANUP_MAX_AGE_SECONDS",
}

# Semantic validators: key -> (validator_fn, human-readable description).
# Validator returns True if the value is acceptable.
CONFIG_VALIDATORS: Dict[str, tuple[Callable[[Any], bool], str]] = {
    "JOB_REGISTRY_CAPACITY": (
        lambda v: 1 <= v <= 100_000,
        "Must be between 1 and 100000",
    ),
    "JOB_MAX_AGE_SECONDS": (
        lambda v: v is None or v > 0,
        "Must be positive, or null to disable age pruning",
    ),
    "DEFAULT_BATCH_SIZE": (
        lambda v: 1 <= v <= 10_000,
        "Must be between 1 and 10000",
    ),
    "BATCH_PAUSE_SECONDS": (
        lambda v: 0.0 <= v <= 10.0,
        "Must be between 0.0 and 10.0",
    ),
    "ERROR_LOG_SIZE": (
        lambda v: 1 <= v <= 1000,
        "Must be between 1 and 1000",
    ),
    "FINAL_ERROR_LIMIT": (
        lambda v: 1 <= v <= 1000,
        "Must be between 1 and 1000",
    ),
    "QUEUE_CLEANUP_MAX_AGE_SECONDS": (
        lambda v: v >= 60,
        "Must be at least 60 seconds",
    ),
}


class ApiSettings(BaseSettings):
    """Immutable settings loaded from environment / .env file."""

    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: str = "http://localhost:5173,http://localhost:8000"
    queue_db_path: str = _cfg.QUEUE_DB_PATH
    registry_capacity: Optional[int] = None
    start_queue_workers: bool = True
    log_level: str = _cfg.LOG_LEVEL

    model_config = {"env_prefix": "CATALOG_JOBS_API_"}


class RuntimeConfig:
    """Thin wrapper around ``catalog_jobs.config`` module-level variables.

    Provides get/patch semantics restricted to the adjustable whitelist.
    Patched values are read live by the runner and registry on their
    next use.
    """

    def __init__(self) -> None:
        self._cfg = _cfg

    def get_adjustable(self) -> Dict[str, Any]:
        """Return the current value of every adjustable key."""
        out: Dict[str, Any] = {}
        for key in sorted(_ADJUSTABLE_KEYS):
            out[key] = getattr(self._cfg, key, None)
        return out

    def patch(self, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply validated updates and return the new state.

        Raises ``KeyError`` for unknown keys and ``ValueError`` for
        values that fail coercion or validation.  Nothing is applied
        unless every update is valid.
        """
        bad = set(updates) - _ADJUSTABLE_KEYS
        if bad:
            raise KeyError(f"Keys not adjustable: {sorted(bad)}")
        staged: Dict[str, Any] = {}
        for key, value in updates.items():
            coerced = self._coerce(key, value)
            validator = CONFIG_VALIDATORS.get(key)
            if validator is not None:
                check_fn, description = validator
                if not check_fn(coerced):
                    raise ValueError(
                        f"Invalid value for {key}: {coerced!r}. {description}"
                    )
            staged[key] = coerced
        for key, coerced in staged.items():
            setattr(self._cfg, key, coerced)
            logger.info("RuntimeConfig patched %s = %r", key, coerced)
        return self.get_adjustable()

    def _coerce(self, key: str, value: Any) -> Any:
        current = getattr(self._cfg, key)
        if value is None and key == "JOB_MAX_AGE_SECONDS":
            return None
        # Optional numeric settings currently unset are treated as floats.
        target_type = type(current) if current is not None else float
        try:
            if target_type is bool:
                if isinstance(value, str):
                    return value.lower() in ("true", "1", "yes")
                return bool(value)
            return target_type(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Cannot coerce {key}={value!r} to {target_type.__name__}") from exc
