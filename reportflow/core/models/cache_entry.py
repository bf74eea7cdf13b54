"""
CacheEntry model for the worker-side external data cache (in-memory only).
"""

from typing import Any

from pydantic import BaseModel, Field


class CacheEntry(BaseModel):
    """
    A provider payload held by the external data cache.

    Times are monotonic-clock seconds, not wall-clock timestamps.

    Attributes:
        subject_id: External subject id (cache key)
        payload: Provider response body
        fetched_at: When the payload was fetched
        expires_at: First instant at which the entry must no longer be served
    """

    subject_id: str = Field(..., min_length=1)
    payload: dict[str, Any]
    fetched_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
