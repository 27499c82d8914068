"""Request bodies for the job and queue endpoints."""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class CancelRequest(BaseModel):
    requested_by: str = Field(default="api", min_length=1)


class ConfigPatch(BaseModel):
    updates: Dict[str, Any]


class CleanupRequest(BaseModel):
    max_age_seconds: Optional[float] = Field(default=None, gt=0)
