"""Route modules, imported lazily by the app factory."""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter

logger = logging.getLogger(__name__)

# Module names (relative to this package) that provide a ``router`` attribute.
_ROUTER_MODULES = [
    "jobs",
    "queues",
    "logs",
    "config_mgmt",
    "health",
]


def all_routers() -> List[APIRouter]:
    """Import and return every router."""
    import importlib

    return [importlib.import_module(f"{__name__}.{name}").router for name in _ROUTER_MODULES]
