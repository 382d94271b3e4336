"""Content-addressable stage result cache with single-flight de-duplication.

One ``asyncio.Lock`` guards the store, expiry checks and the in-flight
registry.  The first caller for a key starts the computation as a
separate task; every caller (including the first) awaits it through
``asyncio.shield`` so a cancelled waiter never cancels work other
waiters still need.  Storage failures are logged and treated as misses.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from pydantic import BaseModel

from src.shared.utils import atomic_write_json, load_json
from src.workflow_builder.exceptions import CacheError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
ComputeFn = Callable[[], Awaitable[Any]]


def _canonical(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


def derive_cache_key(stage: str, *parts: Any) -> str:
    """Deterministic key from a stage name and its normalised inputs.

    Only pass content that determines the stage output (brief text,
    upstream payloads).  Volatile fields such as timestamps or request
    ids must never be part of a key.
    """
    canonical = json.dumps(
        [stage, *parts],
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_canonical,
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{stage}:{digest}"


# ---------------------------------------------------------------------------
# Entries and stores
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CacheStore(Protocol):
    """Storage backend.  Implementations raise :class:`CacheError`; the cache copes."""

    async def get(self, key: str) -> CacheEntry | None:
        ...

    async def set(self, entry: CacheEntry) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class MemoryCacheStore:
    """Process-local dictionary store."""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}

    async def get(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    async def set(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class JsonFileCacheStore:
    """One JSON file per key, written atomically.  Values must be JSON-safe.

    File I/O runs in a worker thread.  Write and delete failures are
    raised as :class:`CacheError`.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key.replace(':', '-')}.json"

    async def get(self, key: str) -> CacheEntry | None:
        data = await asyncio.to_thread(load_json, self._path(key))
        if not isinstance(data, dict) or data.get("key") != key:
            return None
        try:
            return CacheEntry(
                key=key,
                value=data["value"],
                created_at=float(data["created_at"]),
                ttl=float(data["ttl"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring corrupt cache file %s", self._path(key))
            return None

    async def set(self, entry: CacheEntry) -> None:
        path = self._path(entry.key)
        try:
            await asyncio.to_thread(atomic_write_json, path, entry.to_dict())
        except OSError as exc:
            raise CacheError(f"Cannot write cache file {path}: {exc}") from exc

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            raise CacheError(f"Cannot delete cache file {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Result cache
# ---------------------------------------------------------------------------


@dataclass
class CacheResult:
    """Outcome of :meth:`ResultCache.get_or_compute`.

    ``shared`` is True when the caller joined a computation started by
    another caller.
    """

    value: Any = None
    hit: bool = False
    error: BaseException | None = None
    shared: bool = False


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    shared: int = 0
    computations: int = 0
    evictions: int = 0
    store_errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _consume_exception(task: asyncio.Future) -> None:
    # Keeps "exception was never retrieved" quiet when every waiter left.
    if not task.cancelled():
        task.exception()


class ResultCache:
    """Single-flight cache in front of expensive stage computations."""

    def __init__(self, store: CacheStore | None = None, *, clock: Clock = time.time) -> None:
        self._store: CacheStore = store if store is not None else MemoryCacheStore()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._inflight: dict[str, asyncio.Future] = {}
        self.stats = CacheStats()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def get_or_compute(
        self, key: str, ttl: float, compute_fn: ComputeFn
    ) -> CacheResult:
        """Return the cached value for *key* or compute it exactly once.

        Args:
            key: Key from :func:`derive_cache_key`.
            ttl: Seconds a fresh value stays valid.  ``<= 0`` computes
                without storing.
            compute_fn: Zero-argument coroutine function producing the value.

        Returns:
            A :class:`CacheResult`.  Computation failures are returned in
            ``error`` (to the leader and every follower alike), never
            raised.  Cancellation of the caller is propagated.
        """
        async with self._lock:
            entry = await self._read(key)
            if entry is not None:
                self.stats.hits += 1
                logger.debug("Cache hit for %s", key)
                return CacheResult(value=copy.deepcopy(entry.value), hit=True)

            task = self._inflight.get(key)
            shared = task is not None
            if task is None:
                self.stats.misses += 1
                task = asyncio.ensure_future(self._compute(key, ttl, compute_fn))
                task.add_done_callback(_consume_exception)
                self._inflight[key] = task
            else:
                self.stats.shared += 1
                logger.debug("Joining in-flight computation for %s", key)

        try:
            value = await asyncio.shield(task)
        except Exception as exc:
            return CacheResult(error=exc, shared=shared)
        return CacheResult(value=copy.deepcopy(value), shared=shared)

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            try:
                await self._store.delete(key)
            except Exception as exc:
                self.stats.store_errors += 1
                logger.warning("Cache delete failed for %s: %s", key, exc)

    # ---- Internals -------------------------------------------------------

    async def _compute(self, key: str, ttl: float, compute_fn: ComputeFn) -> Any:
        self.stats.computations += 1
        try:
            value = await compute_fn()
        except BaseException:
            async with self._lock:
                self._inflight.pop(key, None)
            raise
        # Store and release under one lock so no caller sees neither.
        async with self._lock:
            if ttl > 0:
                await self._write(
                    CacheEntry(
                        key=key,
                        value=copy.deepcopy(value),
                        created_at=self._clock(),
                        ttl=ttl,
                    )
                )
            self._inflight.pop(key, None)
        return value

    async def _read(self, key: str) -> CacheEntry | None:
        """Caller must hold the lock."""
        try:
            entry = await self._store.get(key)
        except Exception as exc:
            self.stats.store_errors += 1
            logger.warning("Cache read failed for %s, treating as miss: %s", key, exc)
            return None
        if entry is None:
            return None
        if entry.expired(self._clock()):
            self.stats.evictions += 1
            try:
                await self._store.delete(key)
            except Exception as exc:
                self.stats.store_errors += 1
                logger.warning("Cache eviction failed for %s: %s", key, exc)
            return None
        return entry

    async def _write(self, entry: CacheEntry) -> None:
        """Caller must hold the lock."""
        try:
            await self._store.set(entry)
        except Exception as exc:
            self.stats.store_errors += 1
            logger.warning("Cache write failed for %s: %s", entry.key, exc)
