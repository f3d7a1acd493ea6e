"""Persistent local cache backend on a memory-mapped region file.

Region layout::

    header  magic(8) | format_version(u32) | generation(u32) | end_offset(u64) | reserved(u64)
    log     record*   where record = length(u32) | crc32(u32) | json payload

Only bytes below ``end_offset`` are committed. Appends write the record
first and publish it by rewriting ``end_offset``; a clear bumps
``generation`` and resets ``end_offset`` in a single header write. Every
process replays the log into its own index and rebuilds it whenever the
generation or the file identity changes under it.

Writers across processes are serialized with ``fcntl.flock`` on a sibling
``.lock`` file (shared for reads, exclusive for mutations).
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import mmap
import os
import struct
import time
import zlib
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from .base import CacheBackend, CacheStats, OptionsArg
from .entry import CacheEntry, StoreOptions, is_expired
from .errors import BackendUnavailable, ConfigurationError, OperationTimeout

logger = logging.getLogger(__name__)

MAGIC = b"STOWAGE\x00"
FORMAT_VERSION = 1

HEADER = struct.Struct("<8sIIQQ")
RECORD_HEADER = struct.Struct("<II")
_GENERATION_AND_END = struct.Struct("<IQ")
_GENERATION_OFFSET = 12
_END_OFFSET = 16

DEFAULT_REGION_DIR = ".stowage/regions"
REGION_SUFFIX = ".region"


def region_path(directory: str, name: str) -> Path:
    """Deterministic region file location for a named cache."""
    return Path(directory).expanduser() / f"{name}{REGION_SUFFIX}"


def _encode_record(record: Dict[str, Any]) -> bytes:
    payload = json.dumps(record, separators=(",", ":")).encode("utf-8")
    return RECORD_HEADER.pack(len(payload), zlib.crc32(payload)) + payload


class PersistentLocalBackend(CacheBackend):
    """Memory-mapped cache region that survives process restarts.

    Designed for several worker processes on one machine sharing a cache.
    Values must be JSON-serializable.
    """

    backend_type = "persistent-local"

    def __init__(
        self,
        name: str,
        directory: str = DEFAULT_REGION_DIR,
        initial_size: int = 64 * 1024,
        lock_timeout: float = 10.0,
    ):
        """Initialize the backend; the region is opened by initialize().

        Args:
            name: Cache instance name, used for the region file name
            directory: Directory holding region files
            initial_size: Size in bytes of a freshly created region
            lock_timeout: Seconds to wait for the cross-process lock
        """
        if initial_size < HEADER.size:
            raise ConfigurationError(
                f"initial_size must be at least {HEADER.size} bytes", backend=self.backend_type
            )
        self._name = name
        self._path = region_path(directory, name)
        self._lock_path = self._path.with_name(self._path.name + ".lock")
        self._initial_size = initial_size
        self._lock_timeout = lock_timeout

        self._fd: Optional[int] = None
        self._lock_fd: Optional[int] = None
        self._map: Optional[mmap.mmap] = None
        self._inode: Optional[int] = None

        self._index: Dict[str, CacheEntry] = {}
        self._generation = 0
        self._replayed = HEADER.size

        self._mutex = asyncio.Lock()
        self._hits = 0
        self._misses = 0

    @property
    def path(self) -> Path:
        return self._path

    # Lifecycle

    async def initialize(self) -> None:
        """Open (or create) the region and replay its log."""
        if self._map is not None:
            return

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._lock_fd = os.open(str(self._lock_path), os.O_RDWR | os.O_CREAT, 0o666)
        except OSError as exc:
            raise BackendUnavailable(
                f"Cannot open region lock {self._lock_path}: {exc}",
                backend=self.backend_type,
                path=str(self._lock_path),
            ) from exc

        async with self._mutex:
            try:
                await self._acquire_file_lock(exclusive=True)
                try:
                    self._open_region(create=True)
                    self._refresh()
                finally:
                    self._release_file_lock()
            except BaseException:
                self._release_resources()
                raise

        logger.info(
            f"Persistent cache region opened: {self._path} "
            f"(generation: {self._generation}, entries: {len(self._index)})"
        )

    async def close(self) -> None:
        """Unmap the region and close its file handles."""
        async with self._mutex:
            self._release_resources()
        logger.info(f"Persistent cache region closed: {self._path}")

    def _release_resources(self) -> None:
        if self._map is not None:
            self._map.close()
            self._map = None
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None
        if self._lock_fd is not None:
            os.close(self._lock_fd)
            self._lock_fd = None
        self._inode = None
        self._index.clear()
        self._replayed = HEADER.size

    # Region handling

    def _unavailable(self, message: str, exc: Optional[BaseException] = None) -> BackendUnavailable:
        return BackendUnavailable(
            f"{message} ({self._path})" if exc is None else f"{message} ({self._path}): {exc}",
            backend=self.backend_type,
            path=str(self._path),
        )

    def _open_region(self, create: bool = False) -> None:
        """Open and map the region file. Caller holds the file lock."""
        flags = os.O_RDWR | (os.O_CREAT if create else 0)
        try:
            fd = os.open(str(self._path), flags, 0o644)
        except OSError as exc:
            raise self._unavailable("Cannot open cache region", exc) from exc

        try:
            size = os.fstat(fd).st_size
            if size == 0 and create:
                os.ftruncate(fd, self._initial_size)
                os.pwrite(fd, HEADER.pack(MAGIC, FORMAT_VERSION, 0, HEADER.size, 0), 0)
                os.fsync(fd)
                size = self._initial_size
                logger.info(f"Created cache region {self._path} ({size} bytes)")
            if size < HEADER.size:
                raise self._unavailable("Cache region is truncated")
            region = mmap.mmap(fd, 0)
        except BackendUnavailable:
            os.close(fd)
            raise
        except OSError as exc:
            os.close(fd)
            raise self._unavailable("Cannot map cache region", exc) from exc

        magic, version, _, _, _ = HEADER.unpack_from(region, 0)
        if magic != MAGIC:
            region.close()
            os.close(fd)
            raise self._unavailable("File is not a stowage cache region")
        if version != FORMAT_VERSION:
            region.close()
            os.close(fd)
            raise self._unavailable(
                f"Cache region format version {version} is not supported "
                f"(expected {FORMAT_VERSION}); remove the file to start fresh"
            )

        if self._map is not None:
            self._map.close()
        if self._fd is not None:
            os.close(self._fd)
        self._fd = fd
        self._map = region
        self._inode = os.fstat(fd).st_ino

    def _flush_header(self) -> None:
        assert self._map is not None
        self._map.flush(0, min(mmap.PAGESIZE, len(self._map)))

    def _remap(self) -> None:
        assert self._fd is not None and self._map is not None
        self._map.close()
        self._map = mmap.mmap(self._fd, 0)

    def _reset_index(self, generation: int) -> None:
        self._index.clear()
        self._generation = generation
        self._replayed = HEADER.size

    def _refresh(self) -> None:
        """Bring the local index up to date with the region. Caller holds the file lock."""
        try:
            stat = os.stat(self._path)
        except FileNotFoundError as exc:
            raise self._unavailable("Cache region file disappeared", exc) from exc

        if stat.st_ino != self._inode:
            # Replaced by a compaction in another process
            self._open_region()
            self._index.clear()
            self._replayed = HEADER.size
            self._generation = -1

        assert self._map is not None
        if stat.st_size != len(self._map):
            self._remap()

        magic, version, generation, end, _ = HEADER.unpack_from(self._map, 0)
        if magic != MAGIC or version != FORMAT_VERSION:
            raise self._unavailable("Cache region header was overwritten")
        if end < HEADER.size or end > len(self._map):
            raise self._unavailable(f"Cache region end offset {end} is out of bounds")

        if generation != self._generation or end < self._replayed:
            self._reset_index(generation)
        self._replay(end)

    def _replay(self, end: int) -> None:
        assert self._map is not None
        offset = self._replayed
        while offset < end:
            if offset + RECORD_HEADER.size > end:
                raise self._unavailable(f"Truncated record header at offset {offset}")
            length, crc = RECORD_HEADER.unpack_from(self._map, offset)
            start = offset + RECORD_HEADER.size
            stop = start + length
            if stop > end:
                raise self._unavailable(f"Truncated record at offset {offset}")
            payload = self._map[start:stop]
            if zlib.crc32(payload) != crc:
                raise self._unavailable(f"Checksum mismatch at offset {offset}")
            try:
                record = json.loads(payload)
            except ValueError as exc:
                raise self._unavailable(f"Undecodable record at offset {offset}", exc) from exc
            self._apply(record)
            offset = stop
        self._replayed = end

    def _apply(self, record: Dict[str, Any]) -> None:
        op = record.get("op")
        if op == "set":
            self._index[record["k"]] = CacheEntry(
                value=record["v"], created_at=record["c"], ttl=record.get("t")
            )
        elif op == "del":
            for key in record["k"]:
                self._index.pop(key, None)
        else:
            raise self._unavailable(f"Unknown record op {op!r}")

    def _append(self, record: Dict[str, Any]) -> None:
        """Append and commit one record. Caller holds the exclusive file lock."""
        blob = _encode_record(record)
        assert self._map is not None
        if self._replayed + len(blob) > len(self._map):
            self._make_room(len(blob))

        assert self._map is not None
        start = self._replayed
        stop = start + len(blob)
        self._map[start:stop] = blob
        self._map.flush()
        struct.pack_into("<Q", self._map, _END_OFFSET, stop)
        self._flush_header()
        self._replayed = stop
        self._apply(record)

    def _live_records(self) -> bytes:
        now = time.time()
        return b"".join(
            _encode_record({"op": "set", "k": key, "v": entry.value, "c": entry.created_at, "t": entry.ttl})
            for key, entry in self._index.items()
            if not is_expired(entry, now)
        )

    def _make_room(self, needed: int) -> None:
        """Compact the log or grow the region so ``needed`` more bytes fit."""
        assert self._map is not None
        used = self._replayed - HEADER.size
        live = self._live_records()
        if len(live) * 2 <= used:
            self._compact(live, needed)
            if self._replayed + needed <= len(self._map):
                return

        required = self._replayed + needed
        new_size = len(self._map)
        while new_size < required:
            new_size *= 2
        assert self._fd is not None
        try:
            os.ftruncate(self._fd, new_size)
        except OSError as exc:
            raise self._unavailable("Cannot grow cache region", exc) from exc
        self._remap()
        logger.debug(f"Grew cache region {self._path} to {new_size} bytes")

    def _compact(self, live: bytes, needed: int) -> None:
        """Rewrite the region with live entries only and swap it in atomically."""
        assert self._map is not None
        generation = (self._generation + 1) & 0xFFFFFFFF
        end = HEADER.size + len(live)
        size = max(len(self._map), end + needed)
        tmp_path = self._path.with_name(self._path.name + ".compact")
        try:
            with open(tmp_path, "wb") as f:
                f.write(HEADER.pack(MAGIC, FORMAT_VERSION, generation, end, 0))
                f.write(live)
                f.truncate(size)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise self._unavailable("Cannot compact cache region", exc) from exc

        dropped = self._replayed - end
        self._open_region()
        self._reset_index(generation)
        self._replay(end)
        logger.warning(f"Compacted cache region {self._path} (reclaimed {dropped} bytes)")

    # Locking

    async def _acquire_file_lock(self, exclusive: bool) -> None:
        if self._lock_fd is None:
            raise self._unavailable("Cache region is closed")
        operation = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        deadline = time.monotonic() + self._lock_timeout
        while True:
            try:
                fcntl.flock(self._lock_fd, operation | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise OperationTimeout(
                        f"Could not lock cache region {self._path} within {self._lock_timeout}s",
                        backend=self.backend_type,
                        timeout=self._lock_timeout,
                    )
                await asyncio.sleep(0.005)

    def _release_file_lock(self) -> None:
        if self._lock_fd is not None:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)

    @asynccontextmanager
    async def _locked(self, exclusive: bool) -> AsyncIterator[None]:
        async with self._mutex:
            if self._map is None:
                raise self._unavailable("Cache region is not open")
            await self._acquire_file_lock(exclusive)
            try:
                self._refresh()
                yield
            finally:
                self._release_file_lock()

    # Cache operations

    async def store(self, key: str, value: Any, options: OptionsArg = None) -> Any:
        opts = StoreOptions.parse(options)
        record = {"op": "set", "k": key, "v": value, "c": time.time(), "t": opts.ttl}
        async with self._locked(exclusive=True):
            self._append(record)
        return value

    async def fetch(self, key: str) -> Optional[Any]:
        async with self._locked(exclusive=False):
            entry = self._index.get(key)
            if entry is not None and not is_expired(entry):
                self._hits += 1
                return entry.value
            self._misses += 1

        if entry is not None:
            await self._purge_expired([key])
        return None

    async def _purge_expired(self, keys: Iterable[str]) -> None:
        async with self._locked(exclusive=True):
            expired = [
                key for key in keys if key in self._index and is_expired(self._index[key])
            ]
            if expired:
                self._append({"op": "del", "k": expired})
                logger.debug(f"Cache EXPIRED: {', '.join(expired)}")

    async def exists(self, key: str) -> bool:
        async with self._locked(exclusive=False):
            entry = self._index.get(key)
            return entry is not None and not is_expired(entry)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self._locked(exclusive=True):
            present = [key for key in dict.fromkeys(keys) if key in self._index]
            live = sum(1 for key in present if not is_expired(self._index[key]))
            if present:
                self._append({"op": "del", "k": present})
            return live

    async def clear(self, prefix: Optional[str] = None) -> int:
        async with self._locked(exclusive=True):
            matching = [
                key for key in self._index if prefix is None or key.startswith(prefix)
            ]
            count = len(matching)
            if prefix is None:
                assert self._map is not None
                generation = (self._generation + 1) & 0xFFFFFFFF
                _GENERATION_AND_END.pack_into(self._map, _GENERATION_OFFSET, generation, HEADER.size)
                self._flush_header()
                self._reset_index(generation)
            elif matching:
                self._append({"op": "del", "k": matching})
        logger.info(f"Persistent cache region {self._path} cleared {count} entries")
        return count

    async def keys(self, prefix: Optional[str] = None) -> AsyncIterator[str]:
        async with self._locked(exclusive=False):
            now = time.time()
            snapshot: List[str] = [
                key
                for key, entry in self._index.items()
                if not is_expired(entry, now) and (prefix is None or key.startswith(prefix))
            ]
        for key in snapshot:
            yield key

    async def get_stats(self, prefix: Optional[str] = None) -> CacheStats:
        async with self._locked(exclusive=False):
            now = time.time()
            size = sum(
                1
                for key, entry in self._index.items()
                if not is_expired(entry, now) and (prefix is None or key.startswith(prefix))
            )
            region_size = len(self._map) if self._map is not None else 0
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            size=size,
            max_size=-1,
            evictions=0,
            backend_type=self.backend_type,
            connection_info=f"{self._path} ({region_size} bytes)",
        )

    async def increment(self, key: str, amount: int = 1, options: OptionsArg = None) -> int:
        """Increment under the exclusive region lock, atomic across processes.

        A ttl in options applies only when the counter is created.
        """
        opts = StoreOptions.parse(options)
        async with self._locked(exclusive=True):
            entry = self._index.get(key)
            if entry is None or is_expired(entry):
                value, created_at, ttl = amount, time.time(), opts.ttl
            else:
                value, created_at, ttl = (entry.value or 0) + amount, entry.created_at, entry.ttl
            self._append({"op": "set", "k": key, "v": value, "c": created_at, "t": ttl})
            return value
