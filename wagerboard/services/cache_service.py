"""In-memory stale-while-revalidate cache with refresh coordination."""
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from wagerboard.utils.exceptions import CachedFetchError

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"


@dataclass
class CacheRecord:
    key: str
    namespace: str
    data: Any
    timestamp: float
    valid_until: float
    error: Optional[str] = None

    def is_valid(self, now: float) -> bool:
        return now <= self.valid_until


@dataclass
class CacheResult:
    """Outcome of a cache lookup. ``error`` is set when a failure is cached."""
    data: Any = None
    found: bool = False
    stale: bool = False
    error: Optional[str] = None


class CacheService:
    """
    Namespaced TTL cache that can serve expired values while a refresh runs.

    At most one refresh per (namespace, key) is in flight at a time. Callers
    that arrive during a refresh get the current value, even if stale, or wait
    for the refresh when there is nothing cached yet. Expired records are kept
    for ``stale_retention`` seconds so they can still be served stale.
    """

    def __init__(
        self,
        default_ttl: float = 120.0,
        error_ttl: float = 30.0,
        stale_retention: float = 3600.0,
    ):
        self.default_ttl = default_ttl
        self.error_ttl = error_ttl
        self.stale_retention = stale_retention
        self._records: dict[tuple[str, str], CacheRecord] = {}
        self._refreshing: dict[tuple[str, str], asyncio.Future] = {}
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._stale_hits = 0
        self._last_cleanup = time.time()
        self._cleanup_interval = 60.0

    @staticmethod
    def generate_key(namespace: str, *parts: Any) -> str:
        """Build a key like ``leaderboard:weekly:{"limit": 10}`` from its parts."""
        rendered = []
        for part in parts:
            if isinstance(part, (dict, list)):
                rendered.append(json.dumps(part, sort_keys=True, default=str))
            else:
                rendered.append(str(part))
        return ":".join([namespace, *rendered])

    def _cleanup_expired(self):
        """Drop records that expired longer ago than the stale retention window."""
        current_time = time.time()
        if current_time - self._last_cleanup < self._cleanup_interval:
            return

        expired = [
            slot for slot, record in self._records.items()
            if current_time > record.valid_until + self.stale_retention
            and slot not in self._refreshing
        ]
        for slot in expired:
            self._records.pop(slot, None)

        self._last_cleanup = current_time
        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired cache entries")

    def _lookup(self, slot: tuple[str, str], stale_while_revalidate: bool) -> CacheResult:
        record = self._records.get(slot)
        if record is None:
            return CacheResult()

        now = time.time()
        if record.error is not None:
            if record.is_valid(now):
                return CacheResult(found=True, error=record.error)
            return CacheResult()

        if record.is_valid(now):
            return CacheResult(data=record.data, found=True)
        if stale_while_revalidate:
            return CacheResult(data=record.data, found=True, stale=True)
        return CacheResult()

    def _count(self, result: CacheResult) -> None:
        if not result.found or result.error is not None:
            self._misses += 1
        elif result.stale:
            self._stale_hits += 1
        else:
            self._hits += 1

    def get(
        self,
        key: str,
        namespace: str = DEFAULT_NAMESPACE,
        stale_while_revalidate: bool = False,
    ) -> CacheResult:
        """Look a key up. Expired data is returned flagged ``stale`` only when allowed."""
        self._cleanup_expired()
        result = self._lookup((namespace, key), stale_while_revalidate)
        self._count(result)
        return result

    def set(self, key: str, data: Any, ttl: Optional[float] = None, namespace: str = DEFAULT_NAMESPACE) -> None:
        """Store a value with a TTL."""
        if ttl is None:
            ttl = self.default_ttl
        now = time.time()
        self._records[(namespace, key)] = CacheRecord(
            key=key,
            namespace=namespace,
            data=data,
            timestamp=now,
            valid_until=now + ttl,
        )

    def set_error(
        self,
        key: str,
        error: str,
        error_ttl: Optional[float] = None,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        """Remember a failed fetch so it is not retried until ``error_ttl`` passes."""
        if error_ttl is None:
            error_ttl = self.error_ttl
        now = time.time()
        self._records[(namespace, key)] = CacheRecord(
            key=key,
            namespace=namespace,
            data=None,
            timestamp=now,
            valid_until=now + error_ttl,
            error=error,
        )

    def invalidate(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._records.pop((namespace, key), None)

    def invalidate_namespace(self, namespace: str) -> int:
        """Remove every record in a namespace and return how many were removed."""
        slots = [slot for slot in self._records if slot[0] == namespace]
        for slot in slots:
            self._records.pop(slot, None)
        if slots:
            logger.debug(f"Invalidated {len(slots)} cache entries in namespace {namespace}")
        return len(slots)

    def clear(self) -> None:
        """Clear all records and reset statistics."""
        self._records.clear()
        self._hits = 0
        self._misses = 0
        self._stale_hits = 0

    def keys(self, namespace: Optional[str] = None) -> list[str]:
        return [
            key for (record_namespace, key) in self._records
            if namespace is None or record_namespace == namespace
        ]

    def is_refreshing(self, key: str, namespace: str = DEFAULT_NAMESPACE) -> bool:
        return (namespace, key) in self._refreshing

    def get_stats(self) -> dict[str, int]:
        return {
            "hits": self._hits,
            "misses": self._misses,
            "stale_hits": self._stale_hits,
            "keys": len(self._records),
            "refreshing": len(self._refreshing),
        }

    async def with_cache(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        *,
        namespace: str = DEFAULT_NAMESPACE,
        ttl: Optional[float] = None,
        error_ttl: Optional[float] = None,
        stale_while_revalidate: bool = True,
        force_refresh: bool = False,
    ) -> Any:
        """
        Return the cached value for a key, fetching it when needed.

        Args:
            key: Cache key within the namespace
            fetcher: Zero-argument coroutine function producing a fresh value
            namespace: Cache namespace
            ttl: Lifetime of a fetched value
            error_ttl: Lifetime of a cached failure
            stale_while_revalidate: Serve expired data while refreshing or after a failed refresh
            force_refresh: Skip cached values and cached errors

        Raises:
            CachedFetchError: a recent failure for this key is still cached
            Exception: whatever ``fetcher`` raised when no stale value could be served
        """
        slot = (namespace, key)

        async with self._lock:
            self._cleanup_expired()
            current = self._lookup(slot, stale_while_revalidate=stale_while_revalidate)
            has_value = current.found and current.error is None
            in_flight = self._refreshing.get(slot)

            if in_flight is not None and not force_refresh:
                if has_value:
                    self._count(current)
                    return current.data
                self._misses += 1
                waiter = in_flight
            elif current.error is not None and not force_refresh:
                self._misses += 1
                raise CachedFetchError(key, current.error)
            elif has_value and not current.stale and not force_refresh:
                self._count(current)
                return current.data
            else:
                self._misses += 1
                waiter = None
                refresh = asyncio.get_running_loop().create_future()
                # Nobody may join; mark the exception as retrieved either way
                refresh.add_done_callback(lambda f: f.cancelled() or f.exception())
                self._refreshing[slot] = refresh

        if waiter is not None:
            logger.debug(f"Joining in-flight refresh for {namespace}:{key}")
            try:
                return await asyncio.shield(waiter)
            except asyncio.CancelledError:
                task = asyncio.current_task()
                if not waiter.cancelled() or (task is not None and task.cancelling()):
                    raise
            # The caller running the refresh was cancelled, not us; try again ourselves
            logger.info(f"In-flight refresh of {namespace}:{key} was cancelled, retrying")
            return await self.with_cache(
                key,
                fetcher,
                namespace=namespace,
                ttl=ttl,
                error_ttl=error_ttl,
                stale_while_revalidate=stale_while_revalidate,
                force_refresh=force_refresh,
            )

        try:
            value = await fetcher()
        except asyncio.CancelledError:
            refresh.cancel()
            raise
        except Exception as e:
            if has_value and stale_while_revalidate:
                logger.warning(f"Refresh of {namespace}:{key} failed, serving stale value: {e}")
                refresh.set_result(current.data)
                return current.data
            logger.error(f"Refresh of {namespace}:{key} failed with nothing to fall back on: {e}")
            self.set_error(key, str(e) or e.__class__.__name__, error_ttl, namespace)
            refresh.set_exception(e)
            raise
        else:
            self.set(key, value, ttl, namespace)
            refresh.set_result(value)
            return value
        finally:
            if self._refreshing.get(slot) is refresh:
                del self._refreshing[slot]
