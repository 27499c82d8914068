"""Pydantic schemas for API request/response models."""
from .envelope import ApiResponse, ResponseMeta
from .jobs import CancelRequest, CleanupRequest, ConfigPatch

__all__ = ["ApiResponse", "CancelRequest", "CleanupRequest", "ConfigPatch", "ResponseMeta"]
