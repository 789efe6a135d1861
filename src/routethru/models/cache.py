from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class CacheEntry(BaseModel):
    """A stored response body, keyed by the target URL."""

    key: str  # TargetReference string form
    payload: bytes
    content_type: str
    stored_at: datetime
    tier: Literal["memory", "disk"]


class DiskEntryMetadata(BaseModel):
    """Sidecar written next to each disk-tier payload file."""

    url: str
    content_type: str
    stored_at: datetime
    size: int
