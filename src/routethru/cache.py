"""Two-tier response cache.

Memory tier: bounded LRU map with a fixed TTL from insertion, expiry checked
lazily on lookup. Disk tier: one payload file per target URL plus a JSON
sidecar, swept periodically by age and then by total size.

All disk operations catch ``OSError`` internally and degrade gracefully:
read failures return ``None`` (treated as cache miss by callers), write
failures are logged and skipped (the fetched response is still served).
Infrastructure errors never cross the cache class boundary. Errors are still
logged with ``exc_info=True`` so they remain observable.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import mimetypes
import os
import tempfile
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Literal
from urllib.parse import quote, urlsplit

import structlog
from pydantic import ValidationError

from routethru.models.cache import CacheEntry, DiskEntryMetadata
from routethru.models.upstream import media_type
from routethru.rewriter import HTML_TYPES

if TYPE_CHECKING:
    from collections.abc import Callable

log = structlog.get_logger()

BODY_SUFFIX = ".body"
META_SUFFIX = ".meta"
TMP_SUFFIX = ".tmp"
# Leaves room for the suffixes inside the usual 255-byte filename limit
_MAX_NAME_LENGTH = 200
_DEFAULT_CONTENT_TYPE = "application/octet-stream"


def cache_filename(key: str) -> str:
    """Filesystem-safe escaped form of a target URL.

    Over-long names keep a readable prefix and end in the key's SHA-256, so
    they stay unique; the sidecar's ``url`` field confirms the match.
    """
    escaped = quote(key, safe="")
    if len(escaped) <= _MAX_NAME_LENGTH:
        return escaped
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"{escaped[: _MAX_NAME_LENGTH - len(digest) - 1]}-{digest}"


def guess_content_type(key: str) -> str:
    """Infer a content type from the URL path's extension."""
    guessed, _ = mimetypes.guess_type(urlsplit(key).path)
    return guessed or _DEFAULT_CONTENT_TYPE


# ---------------------------------------------------------------------------
# Memory tier
# ---------------------------------------------------------------------------


class MemoryCache:
    """Bounded LRU map whose entries expire a fixed time after insertion."""

    def __init__(
        self,
        capacity: int = 50,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        # key -> (inserted_at, entry), least recently used first
        self._entries: OrderedDict[str, tuple[float, CacheEntry]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def _expired(self, inserted_at: float) -> bool:
        return self._clock() - inserted_at > self.ttl_seconds

    def get(self, key: str) -> CacheEntry | None:
        """Return a live entry and mark it most recently used."""
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                self.misses += 1
                return None
            inserted_at, entry = item
            if self._expired(inserted_at):
                del self._entries[key]
                self.misses += 1
                log.debug("memory_cache_expired", key=key)
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return entry

    def set(self, key: str, payload: bytes, content_type: str) -> CacheEntry:
        """Insert or replace *key*; evicts the least recently used entry when full."""
        entry = CacheEntry(
            key=key,
            payload=payload,
            content_type=content_type,
            stored_at=datetime.now(UTC),
            tier="memory",
        )
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (self._clock(), entry)
            if len(self._entries) > self.capacity:
                evicted_key, _ = self._entries.popitem(last=False)
                self.evictions += 1
                log.debug("memory_cache_evict", key=evicted_key)
        return entry

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            size_before = len(self._entries)
            self._entries.clear()
        log.info("memory_cache_cleared", removed=size_before)

    def get_stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": round(self.hits / total, 3) if total else 0.0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        item = self._entries.get(key)
        return item is not None and not self._expired(item[0])


# ---------------------------------------------------------------------------
# Disk tier
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SweepResult:
    expired: int
    evicted: int
    remaining_entries: int
    remaining_bytes: int


@dataclass(frozen=True)
class _DiskRecord:
    name: str
    size: int  # payload plus sidecar
    mtime: float


class DiskCache:
    """One file per cached target URL under a dedicated directory."""

    def __init__(
        self,
        directory: str | Path,
        ttl_hours: float = 24.0,
        max_bytes: int = 1024**3,
        max_entry_bytes: int = 100 * 1024**2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = Path(directory).expanduser()
        self.ttl_seconds = ttl_hours * 3600
        self.max_bytes = max_bytes
        self.max_entry_bytes = max_entry_bytes
        self._clock = clock
        self._index: dict[str, _DiskRecord] = {}
        self._index_lock = threading.Lock()

    def _body_path(self, name: str) -> Path:
        return self.directory / f"{name}{BODY_SUFFIX}"

    def _meta_path(self, name: str) -> Path:
        return self.directory / f"{name}{META_SUFFIX}"

    # -- lifecycle -------------------------------------------------------------

    async def init(self) -> None:
        """Create the directory, drop leftovers of interrupted writes, load the index."""
        try:
            await asyncio.to_thread(self._init)
        except OSError:
            log.warning("disk_cache_init_error", directory=str(self.directory), exc_info=True)
            return
        log.info(
            "disk_cache_loaded",
            directory=str(self.directory),
            entries=len(self._index),
            total_bytes=self.total_bytes,
        )

    def _init(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        for path in self.directory.glob(f"*{TMP_SUFFIX}"):
            path.unlink(missing_ok=True)
        self._rebuild_index(self._scan())

    def _scan(self) -> list[_DiskRecord]:
        records: list[_DiskRecord] = []
        with os.scandir(self.directory) as entries:
            for item in entries:
                if not item.name.endswith(BODY_SUFFIX) or not item.is_file():
                    continue
                name = item.name[: -len(BODY_SUFFIX)]
                stat = item.stat()
                size = stat.st_size
                with contextlib.suppress(FileNotFoundError):
                    size += self._meta_path(name).stat().st_size
                records.append(_DiskRecord(name=name, size=size, mtime=stat.st_mtime))
        return records

    def _rebuild_index(self, records: list[_DiskRecord]) -> None:
        with self._index_lock:
            self._index = {record.name: record for record in records}

    @property
    def total_bytes(self) -> int:
        with self._index_lock:
            return sum(record.size for record in self._index.values())

    def __len__(self) -> int:
        return len(self._index)

    # -- reads ---------------------------------------------------------------

    async def get(self, key: str) -> CacheEntry | None:
        """Read an entry. Returns ``None`` on miss, expiry, or read failure."""
        try:
            return await asyncio.to_thread(self._read, key)
        except OSError:
            log.warning("disk_cache_read_error", key=key, exc_info=True)
            return None

    def _read(self, key: str) -> CacheEntry | None:
        name = cache_filename(key)
        body_path = self._body_path(name)
        try:
            stat = body_path.stat()
        except FileNotFoundError:
            return None
        if self._clock() - stat.st_mtime > self.ttl_seconds:
            log.debug("disk_cache_expired", key=key)
            return None

        metadata = self._read_metadata(name)
        if metadata is not None and metadata.url != key:
            return None
        if metadata is None and name != quote(key, safe=""):
            # A hashed name cannot be confirmed without its sidecar
            return None

        try:
            payload = body_path.read_bytes()
        except FileNotFoundError:
            # Swept between stat() and read
            return None

        return CacheEntry(
            key=key,
            payload=payload,
            content_type=metadata.content_type if metadata else guess_content_type(key),
            stored_at=(
                metadata.stored_at if metadata else datetime.fromtimestamp(stat.st_mtime, UTC)
            ),
            tier="disk",
        )

    def _read_metadata(self, name: str) -> DiskEntryMetadata | None:
        try:
            return DiskEntryMetadata.model_validate_json(self._meta_path(name).read_bytes())
        except FileNotFoundError:
            return None
        except ValidationError:
            log.warning("disk_cache_bad_metadata", name=name)
            return None

    # -- writes --------------------------------------------------------------

    async def set(self, key: str, payload: bytes, content_type: str) -> bool:
        """Write an entry atomically. Non-fatal on failure."""
        if len(payload) > self.max_entry_bytes:
            log.info("disk_cache_entry_too_large", key=key, size=len(payload))
            return False
        try:
            await asyncio.to_thread(self._write, key, payload, content_type)
        except OSError:
            log.warning("disk_cache_write_error", key=key, exc_info=True)
            return False
        log.debug("disk_cache_stored", key=key, size=len(payload))
        return True

    def writer(self, key: str, content_type: str) -> DiskCacheWriter:
        """Start an incremental write for a body that arrives in chunks."""
        return DiskCacheWriter(self, key, content_type)

    def _open_temp(self) -> tuple[BinaryIO, str]:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".", suffix=TMP_SUFFIX)
        return os.fdopen(fd, "wb"), tmp_path

    def _write(self, key: str, payload: bytes, content_type: str) -> None:
        handle, tmp_path = self._open_temp()
        try:
            with handle:
                handle.write(payload)
            self._commit(tmp_path, key, content_type, len(payload))
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _commit(self, tmp_path: str, key: str, content_type: str, size: int) -> None:
        """Publish a fully written temp file as the entry for *key*."""
        name = cache_filename(key)
        metadata = DiskEntryMetadata(
            url=key, content_type=content_type, stored_at=datetime.now(UTC), size=size
        )
        meta_bytes = metadata.model_dump_json().encode("utf-8")

        meta_fd, meta_tmp = tempfile.mkstemp(dir=self.directory, prefix=".", suffix=TMP_SUFFIX)
        try:
            with os.fdopen(meta_fd, "wb") as handle:
                handle.write(meta_bytes)
            os.replace(meta_tmp, self._meta_path(name))
        except BaseException:
            Path(meta_tmp).unlink(missing_ok=True)
            raise
        os.replace(tmp_path, self._body_path(name))

        record = _DiskRecord(name=name, size=size + len(meta_bytes), mtime=self._clock())
        with self._index_lock:
            self._index[name] = record

    def _remove(self, name: str) -> None:
        self._body_path(name).unlink(missing_ok=True)
        self._meta_path(name).unlink(missing_ok=True)
        with self._index_lock:
            self._index.pop(name, None)

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._remove, cache_filename(key))
        except OSError:
            log.warning("disk_cache_delete_error", key=key, exc_info=True)

    # -- maintenance ---------------------------------------------------------

    async def sweep(self) -> SweepResult | None:
        """Expire old entries, then evict oldest-modified first until under budget."""
        try:
            result = await asyncio.to_thread(self._sweep)
        except OSError:
            log.warning("disk_cache_sweep_error", exc_info=True)
            return None
        log.info(
            "disk_cache_sweep_complete",
            expired=result.expired,
            evicted=result.evicted,
            remaining_entries=result.remaining_entries,
            remaining_bytes=result.remaining_bytes,
        )
        return result

    def _sweep(self) -> SweepResult:
        if not self.directory.exists():
            return SweepResult(expired=0, evicted=0, remaining_entries=0, remaining_bytes=0)

        now = self._clock()
        expired = 0
        live: list[_DiskRecord] = []
        for record in self._scan():
            if now - record.mtime > self.ttl_seconds:
                self._remove(record.name)
                expired += 1
            else:
                live.append(record)

        live.sort(key=lambda record: record.mtime)
        total = sum(record.size for record in live)
        evicted = 0
        while live and total > self.max_bytes:
            oldest = live.pop(0)
            self._remove(oldest.name)
            total -= oldest.size
            evicted += 1

        self._remove_orphans(now)
        self._rebuild_index(live)
        return SweepResult(
            expired=expired, evicted=evicted, remaining_entries=len(live), remaining_bytes=total
        )

    def _remove_orphans(self, now: float) -> None:
        """Delete sidecars without a payload and temp files abandoned long ago."""
        for path in self.directory.glob(f"*{META_SUFFIX}"):
            if not self._body_path(path.name[: -len(META_SUFFIX)]).exists():
                path.unlink(missing_ok=True)
        for path in self.directory.glob(f"*{TMP_SUFFIX}"):
            with contextlib.suppress(FileNotFoundError):
                if now - path.stat().st_mtime > self.ttl_seconds:
                    path.unlink(missing_ok=True)


class DiskCacheWriter:
    """Streams a body into a temp file and publishes it only on ``commit``.

    ``abort`` is synchronous so it can run from cancellation cleanup.
    """

    def __init__(self, cache: DiskCache, key: str, content_type: str) -> None:
        self._cache = cache
        self.key = key
        self.content_type = content_type
        self._handle: BinaryIO | None = None
        self._tmp_path: str | None = None
        self.size = 0
        self.active = True

    async def write(self, chunk: bytes) -> None:
        if not self.active:
            return
        if self.size + len(chunk) > self._cache.max_entry_bytes:
            log.info("disk_cache_entry_too_large", key=self.key, size=self.size + len(chunk))
            self.abort()
            return
        try:
            if self._handle is None:
                self._handle, self._tmp_path = await asyncio.to_thread(self._cache._open_temp)
            await asyncio.to_thread(self._handle.write, chunk)
        except OSError:
            log.warning("disk_cache_write_error", key=self.key, exc_info=True)
            self.abort()
            return
        self.size += len(chunk)

    async def commit(self) -> bool:
        if not self.active:
            return False
        try:
            if self._handle is None:
                self._handle, self._tmp_path = await asyncio.to_thread(self._cache._open_temp)
            self._handle.close()
            await asyncio.to_thread(
                self._cache._commit, self._tmp_path, self.key, self.content_type, self.size
            )
        except OSError:
            log.warning("disk_cache_write_error", key=self.key, exc_info=True)
            self.abort()
            return False
        self.active = False
        log.debug("disk_cache_stored", key=self.key, size=self.size)
        return True

    def abort(self) -> None:
        """Discard the partial file. Safe to call more than once."""
        if not self.active:
            return
        self.active = False
        if self._handle is not None:
            with contextlib.suppress(OSError):
                self._handle.close()
        if self._tmp_path is not None:
            with contextlib.suppress(OSError):
                Path(self._tmp_path).unlink(missing_ok=True)
        log.debug("disk_cache_write_aborted", key=self.key, written=self.size)


# ---------------------------------------------------------------------------
# Read-through facade
# ---------------------------------------------------------------------------


class CacheService:
    """Owns both tiers and decides which one a response belongs in.

    HTML documents go to memory, every other cacheable body to disk. A disk
    hit is served from disk and does not warm the memory tier.
    """

    def __init__(self, memory: MemoryCache | None = None, disk: DiskCache | None = None) -> None:
        self.memory = memory
        self.disk = disk

    @staticmethod
    def is_cacheable(status_code: int) -> bool:
        # Entries carry no status and are always replayed as 200
        return status_code == 200

    def tier_for(self, content_type: str) -> Literal["memory", "disk"] | None:
        if media_type(content_type) in HTML_TYPES:
            return "memory" if self.memory is not None else None
        return "disk" if self.disk is not None else None

    async def lookup(self, key: str) -> CacheEntry | None:
        if self.memory is not None:
            entry = self.memory.get(key)
            if entry is not None:
                return entry
        if self.disk is not None:
            return await self.disk.get(key)
        return None

    async def store(self, key: str, payload: bytes, content_type: str) -> bool:
        tier = self.tier_for(content_type)
        if tier == "memory" and self.memory is not None:
            self.memory.set(key, payload, content_type)
            return True
        if tier == "disk" and self.disk is not None:
            return await self.disk.set(key, payload, content_type)
        return False

    def open_writer(self, key: str, content_type: str) -> DiskCacheWriter | None:
        if self.tier_for(content_type) != "disk" or self.disk is None:
            return None
        return self.disk.writer(key, content_type)

    async def sweep(self) -> SweepResult | None:
        if self.disk is None:
            return None
        return await self.disk.sweep()
