"""Protocol interfaces for swappable components.

The pipeline and AppState reference these protocols, not the concrete
implementations. This allows:
- Tests to use lightweight in-memory fetchers
- An alternate fetcher (e.g. a headless-browser renderer that returns the
  rendered DOM) to be swapped in without touching the rewriter or the cache
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Mapping

    from routethru.codec import TargetReference
    from routethru.models.upstream import UpstreamResponse, UpstreamStream


class FetcherProtocol(Protocol):
    """Interface for anything that can produce an upstream response for a target."""

    async def open(
        self, target: TargetReference, inbound_headers: Mapping[str, str] | None = None
    ) -> UpstreamStream: ...

    async def fetch(
        self, target: TargetReference, inbound_headers: Mapping[str, str] | None = None
    ) -> UpstreamResponse: ...
