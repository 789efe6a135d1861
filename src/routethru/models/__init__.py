from __future__ import annotations

from routethru.models.cache import CacheEntry, DiskEntryMetadata
from routethru.models.upstream import UpstreamResponse, UpstreamStream, media_type

__all__ = [
    # cache
    "CacheEntry",
    "DiskEntryMetadata",
    # upstream
    "UpstreamResponse",
    "UpstreamStream",
    "media_type",
]
