"""routethru: unblocking HTTP proxy that rewrites pages to route through itself."""

from __future__ import annotations

import warnings
from importlib import metadata

from routethru.codec import TargetReference, decode, encode, proxy_path

DIST_NAME = "routethru"
FALLBACK_VERSION = "0.0.0+unknown"


def _resolve_version() -> str:
    try:
        return metadata.version(DIST_NAME)
    except metadata.PackageNotFoundError:
        # Running from a source checkout that was never installed
        warnings.warn(
            f"No installed metadata for {DIST_NAME!r}; reporting version {FALLBACK_VERSION!r}.",
            RuntimeWarning,
            stacklevel=2,
        )
        return FALLBACK_VERSION


__version__ = _resolve_version()

__all__ = ["TargetReference", "__version__", "decode", "encode", "proxy_path"]
