"""
Central configuration for the bulk-job engine.

Flat-constant interface.  Every value is derived from the structured
config singleton in ``config_structured.py`` so there is a single source
of truth.  Runtime patches made through ``/api/config`` rebind the
constants in this module; the runner and registry read them lazily when
no explicit value is passed.

Config Status Legend
====================
  ACTIVE      Imported and used by running code.

Search for ``# STATUS:`` to locate all annotations.
"""
from typing import Dict, List, Optional

from .config_structured import get_config as _get_config

_cfg = _get_config()

# ── Paths ──────────────────────────────────────────────────────────────
QUEUE_DB_PATH: str = _cfg.queue.db_path           # STATUS: ACTIVE api/config.py ApiSettings default

# ── Job registry ───────────────────────────────────────────────────────
JOB_REGISTRY_CAPACITY: int = _cfg.registry.capacity                  # STATUS: ACTIVE jobs/registry.py
JOB_MAX_AGE_SECONDS: Optional[float] = _cfg.registry.max_age_seconds  # STATUS: ACTIVE jobs/registry.py
ERROR_LOG_SIZE: int = _cfg.registry.error_log_size                    # STATUS: ACTIVE trailing errors while running
FINAL_ERROR_LIMIT: int = _cfg.registry.final_error_limit              # STATUS: ACTIVE first-N errors kept at completion

# ── Background runner ──────────────────────────────────────────────────
DEFAULT_BATCH_SIZE: int = _cfg.runner.batch_size                  # STATUS: ACTIVE jobs/runner.py
BATCH_PAUSE_SECONDS: float = _cfg.runner.batch_pause_seconds      # STATUS: ACTIVE jobs/runner.py
EXCLUSIVE_JOB_PER_OWNER: bool = _cfg.runner.exclusive_per_owner   # STATUS: ACTIVE jobs/runner.py

# ── Durable queue ──────────────────────────────────────────────────────
QUEUE_POLL_INTERVAL_SECONDS: float = _cfg.queue.poll_interval_seconds  # STATUS: ACTIVE api/deps/providers.py
QUEUE_LANES: Dict[str, object] = dict(_cfg.lanes)                      # STATUS: ACTIVE jobs/gateway.py, api/routers/config_mgmt.py
QUEUE_CLEANUP_MAX_AGE_SECONDS: float = 24 * 60 * 60                    # STATUS: ACTIVE api/routers/queues.py cleanup default

# ── Logging ────────────────────────────────────────────────────────────
LOG_LEVEL = _cfg.logging.level                    # STATUS: ACTIVE api/config.py ApiSettings default; "DEBUG", "INFO", "WARNING", "ERROR"
LOG_FORMAT = _cfg.logging.format.value            # STATUS: ACTIVE api/main.py; "structured" or "json"


def validate_config() -> List[Dict[str, str]]:
    """Check config for common misconfigurations.

    Returns a list of dicts: [{"level": "WARNING"|"ERROR", "message": str}].
    Called on server startup.
    """
    issues: List[Dict[str, str]] = []

    if JOB_REGISTRY_CAPACITY < 1:
        issues.append({
            "level": "ERROR",
            "message": f"JOB_REGISTRY_CAPACITY={JOB_REGISTRY_CAPACITY} must be at least 1.",
        })
    elif JOB_REGISTRY_CAPACITY < 20:
        issues.append({
            "level": "WARNING",
            "message": (
                f"JOB_REGISTRY_CAPACITY={JOB_REGISTRY_CAPACITY} is very small; "
                "finished jobs will become unresolvable soon after they complete."
            ),
        })

    if JOB_MAX_AGE_SECONDS is not None and JOB_MAX_AGE_SECONDS < 60:
        issues.append({
            "level": "WARNING",
            "message": (
                f"JOB_MAX_AGE_SECONDS={JOB_MAX_AGE_SECONDS} prunes finished jobs "
                "before most pollers can observe the terminal state."
            ),
        })

    if DEFAULT_BATCH_SIZE < 1:
        issues.append({"level": "ERROR", "message": "DEFAULT_BATCH_SIZE must be >= 1."})

    if BATCH_PAUSE_SECONDS == 0:
        issues.append({
            "level": "WARNING",
            "message": (
                "BATCH_PAUSE_SECONDS=0: the runner only yields at processor awaits, "
                "synchronous processors will starve request handling."
            ),
        })

    if FINAL_ERROR_LIMIT < ERROR_LOG_SIZE:
        issues.append({
            "level": "WARNING",
            "message": (
                f"FINAL_ERROR_LIMIT ({FINAL_ERROR_LIMIT}) is smaller than ERROR_LOG_SIZE "
                f"({ERROR_LOG_SIZE}); completed jobs show fewer errors than running ones."
            ),
        })

    for name, lane in QUEUE_LANES.items():
        if getattr(lane, "max_attempts", 1) > 1 and getattr(lane, "backoff_delay_seconds", 0) == 0:
            issues.append({
                "level": "WARNING",
                "message": f"Lane '{name}' retries without backoff delay.",
            })

    if LOG_FORMAT not in ("structured", "json"):
        issues.append({"level": "ERROR", "message": f"Unknown LOG_FORMAT '{LOG_FORMAT}'."})

    return issues
