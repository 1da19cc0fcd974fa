"""Graph query cache with TTL expiry and chapter-aware invalidation"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import quote, unquote

from pydantic import BaseModel

from novelctx.errors import InvalidKeyFormatError

logger = logging.getLogger(__name__)

KEY_DELIMITER = ":"
DEFAULT_TTL_SECONDS = 5 * 60


def _component(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    return "" if value is None else str(value)


@dataclass(frozen=True)
class CacheKey:
    """
    Structured cache key: query category, novel, chapter, then extra discriminators.

    Rendered as ``category:novel_id:chapter_number:param...`` with every
    component percent-escaped, so the delimiter never occurs inside one.
    """
    category: str
    novel_id: str
    chapter_number: int
    params: Tuple[str, ...] = ()

    def render(self) -> str:
        parts = [self.category, self.novel_id, str(self.chapter_number), *self.params]
        return KEY_DELIMITER.join(quote(part, safe="") for part in parts)

    def __str__(self) -> str:
        return self.render()

    @classmethod
    def parse(cls, text: str) -> "CacheKey":
        """
        Parse a rendered key.

        Raises:
            InvalidKeyFormatError: If the text does not have the fixed layout
        """
        if not isinstance(text, str):
            raise InvalidKeyFormatError(f"Cache key must be a string, got {type(text).__name__}")
        parts = text.split(KEY_DELIMITER)
        if len(parts) < 3 or not parts[0] or not parts[1]:
            raise InvalidKeyFormatError(f"Malformed cache key: {text!r}")
        try:
            chapter_number = int(unquote(parts[2]))
        except ValueError as e:
            raise InvalidKeyFormatError(f"Malformed chapter in cache key: {text!r}") from e
        return cls(
            category=unquote(parts[0]),
            novel_id=unquote(parts[1]),
            chapter_number=chapter_number,
            params=tuple(unquote(p) for p in parts[3:])
        )


KeyLike = Union[CacheKey, str]


@dataclass
class _CacheEntry:
    payload: Any
    stored_at: float


class CacheStats(BaseModel):
    """Point-in-time cache snapshot"""
    total: int
    valid: int
    expired: int
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class QueryCache:
    """
    Process-local cache of graph query results.

    Entries expire after ``ttl_seconds`` (lazily on lookup, and by a
    background sweep every ``sweep_interval_seconds``). Every operation holds
    the lock only for its own short mutation; bulk invalidation and sweeping
    remove one key per lock acquisition.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize an empty cache

        Args:
            ttl_seconds: Maximum entry age before it is treated as stale
            sweep_interval_seconds: Period of the background sweep (default: twice the TTL)
            clock: Monotonic time source in seconds, injectable for tests
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if sweep_interval_seconds is None:
            sweep_interval_seconds = ttl_seconds * 2
        if sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        if sweep_interval_seconds <= ttl_seconds:
            logger.warning(
                f"Sweep interval {sweep_interval_seconds}s is not longer than the {ttl_seconds}s TTL; "
                f"the sweep will run more often than entries expire"
            )

        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[KeyLike, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._sweeper: Optional[asyncio.Task] = None

    @staticmethod
    def build_key(
        category: Any,
        novel_id: Any,
        chapter_number: int,
        *params: Any,
        filters: Optional[Mapping[str, Any]] = None
    ) -> CacheKey:
        """
        Build a key from its components in fixed order.

        Filters are appended as ``name=value`` sorted by name, so the same
        filters always produce the same key.
        """
        filters = filters or {}
        extra = [_component(p) for p in params]
        extra.extend(f"{_component(name)}={_component(filters[name])}" for name in sorted(filters, key=str))
        return CacheKey(
            category=_component(category),
            novel_id=_component(novel_id),
            chapter_number=int(chapter_number),
            params=tuple(extra)
        )

    @staticmethod
    def _normalize(key: KeyLike) -> KeyLike:
        if isinstance(key, CacheKey):
            return key
        try:
            return CacheKey.parse(key)
        except InvalidKeyFormatError:
            return key

    def _is_expired(self, entry: _CacheEntry, now: float) -> bool:
        return now - entry.stored_at > self.ttl_seconds

    def get(self, key: KeyLike) -> Optional[Any]:
        """Return the cached payload, or None when absent or expired"""
        key = self._normalize(key)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            expired = self._is_expired(entry, now)
            if expired:
                del self._entries[key]
                self._misses += 1
            else:
                self._hits += 1

        if expired:
            logger.debug(f"Cache entry expired: {key}")
            return None
        logger.debug(f"Cache hit: {key}")
        return entry.payload

    def put(self, key: KeyLike, payload: Any) -> None:
        """Store or overwrite a payload, stamped with the current time"""
        if payload is None:
            logger.debug(f"Skipping cache put of None payload: {key}")
            return
        key = self._normalize(key)
        entry = _CacheEntry(payload=payload, stored_at=self._clock())
        with self._lock:
            self._entries[key] = entry
        logger.debug(f"Cache put: {key}")

    def _snapshot_keys(self) -> List[KeyLike]:
        with self._lock:
            return list(self._entries)

    def _remove_if(self, key: KeyLike, predicate: Callable[[_CacheEntry], bool]) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not predicate(entry):
                return False
            del self._entries[key]
            return True

    @staticmethod
    def _key_fields(key: KeyLike) -> Optional[CacheKey]:
        if isinstance(key, CacheKey):
            return key
        try:
            return CacheKey.parse(key)
        except InvalidKeyFormatError as e:
            logger.debug(f"Keeping unparseable cache key during invalidation: {e}")
            return None

    def invalidate_novel(self, novel_id: Any) -> int:
        """
        Remove every entry of a novel, whatever its category or chapter.

        Returns:
            Number of entries removed
        """
        novel_id = _component(novel_id)
        removed = 0
        for key in self._snapshot_keys():
            fields = self._key_fields(key)
            if fields is not None and fields.novel_id == novel_id:
                if self._remove_if(key, lambda _entry: True):
                    removed += 1
        logger.info(f"Invalidated novel cache: novel_id={novel_id}, removed={removed}")
        return removed

    def invalidate_from_chapter(self, novel_id: Any, chapter_number: int) -> int:
        """
        Remove a novel's entries computed at or after a chapter.

        Entries for earlier chapters stay valid. Keys that cannot be parsed are kept.

        Returns:
            Number of entries removed
        """
        novel_id = _component(novel_id)
        removed = 0
        for key in self._snapshot_keys():
            fields = self._key_fields(key)
            if fields is None or fields.novel_id != novel_id:
                continue
            if fields.chapter_number >= chapter_number:
                if self._remove_if(key, lambda _entry: True):
                    removed += 1
        logger.info(
            f"Invalidated cache: novel_id={novel_id}, chapter>={chapter_number}, removed={removed}"
        )
        return removed

    def sweep_expired(self) -> int:
        """
        Evict every entry older than the TTL.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        removed = 0
        for key in self._snapshot_keys():
            if self._remove_if(key, lambda entry: self._is_expired(entry, now)):
                removed += 1
        if removed:
            logger.info(f"Swept expired cache entries: removed={removed}")
        return removed

    def stats(self) -> CacheStats:
        """Snapshot of entry counts; expired counts entries not yet swept"""
        now = self._clock()
        with self._lock:
            stamps = [entry.stored_at for entry in self._entries.values()]
            hits, misses = self._hits, self._misses
        valid = sum(1 for stored_at in stamps if now - stored_at <= self.ttl_seconds)
        return CacheStats(
            total=len(stamps),
            valid=valid,
            expired=len(stamps) - valid,
            hits=hits,
            misses=misses
        )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # Background sweep

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def start(self) -> None:
        """Start the periodic sweep on the running event loop"""
        if self.sweeping:
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="query-cache-sweep")
        logger.debug(f"Started cache sweep every {self.sweep_interval_seconds}s")

    async def stop(self) -> None:
        """Cancel the periodic sweep and wait for it to finish"""
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Stopped cache sweep")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.exception(f"Cache sweep failed: {e}")

    async def __aenter__(self) -> "QueryCache":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
