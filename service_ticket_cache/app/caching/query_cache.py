"""
In-memory query cache for ticket data.

Entries are keyed by the namespaced keys produced in ``fingerprint``. The
cache serves stored values immediately, refreshes stale ones in the
background, collapses concurrent fetches of one key into a single remote
call and evicts entries nobody references once their retention window
has passed.
"""

import asyncio
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Set, Union

from shared.errors import TicketCacheException, TransportFailure
from shared.logging import get_logger, set_cache_key
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, call_with_retry

from ..models import TicketListResponse
from .fingerprint import entity_id_of, query_kind_of
from .subscriptions import CacheEvent, CacheEventType, SubscriptionRegistry


Fetcher = Callable[[], Awaitable[Any]]
KeyPredicate = Callable[[str], bool]
FetcherResolver = Callable[[str], Optional[Fetcher]]


@dataclass(frozen=True)
class QueryPolicy:
    """Freshness and retention windows, in seconds."""
    stale_time: float
    gc_time: float


DEFAULT_POLICY = QueryPolicy(stale_time=300.0, gc_time=600.0)


@dataclass
class CacheEntry:
    """Cached result for one key."""
    key: str
    value: Any
    fetched_at: float
    policy: QueryPolicy
    invalidated: bool = False
    ref_count: int = 0
    released_at: Optional[float] = None
    error: Optional[str] = None
    fetcher: Optional[Fetcher] = field(default=None, repr=False)

    def is_stale(self, now: float) -> bool:
        return self.invalidated or (now - self.fetched_at) >= self.policy.stale_time

    def idle_since(self) -> float:
        if self.released_at is None:
            return self.fetched_at
        return max(self.fetched_at, self.released_at)


class CacheLookup(NamedTuple):
    """Result of a cache read."""
    value: Any
    is_stale: bool
    fetched_at: float
    error: Optional[str] = None
    is_fetching: bool = False


class QueryCache:
    """Process-wide query cache owned by a cache context."""

    def __init__(
        self,
        policies: Optional[Dict[str, QueryPolicy]] = None,
        *,
        registry: Optional[SubscriptionRegistry] = None,
        metrics: Optional[MetricsCollector] = None,
        retry_config: Optional[RetryConfig] = None,
        fetch_timeout: Optional[float] = None,
        fetcher_resolver: Optional[FetcherResolver] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policies = dict(policies or {})
        self.registry = registry or SubscriptionRegistry()
        self.metrics = metrics
        self.retry_config = retry_config or RetryConfig(max_attempts=2)
        self.fetch_timeout = fetch_timeout
        self.fetcher_resolver = fetcher_resolver
        self.logger = get_logger("ticket_cache.query_cache")
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._in_flight: Dict[str, "asyncio.Future[Any]"] = {}
        self._ref_counts: Dict[str, int] = {}
        self._generations: Dict[str, int] = {}
        self._invalidation_epochs: Dict[str, int] = {}
        self._background: Set["asyncio.Task[Any]"] = set()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def policy_for(self, key: str) -> QueryPolicy:
        return self.policies.get(query_kind_of(key), DEFAULT_POLICY)

    def get(self, key: str) -> Optional[CacheLookup]:
        """Return the cached value for ``key`` or ``None`` on a miss.

        A stale hit schedules a background refetch when a fetcher is known
        for the key and an event loop is running. Never raises.
        """
        kind = query_kind_of(key)
        entry = self._entries.get(key)
        if entry is None:
            self._count("cache_misses_total", query_kind=kind)
            return None

        stale = entry.is_stale(self._clock())
        self._count("cache_hits_total", query_kind=kind, freshness="stale" if stale else "fresh")
        if stale and key not in self._in_flight:
            fetcher = self._fetcher_for(entry)
            if fetcher is not None:
                self._schedule_refresh(key, fetcher, entry.policy)

        return CacheLookup(
            value=entry.value,
            is_stale=stale,
            fetched_at=entry.fetched_at,
            error=entry.error,
            is_fetching=key in self._in_flight,
        )

    def _fetcher_for(self, entry: CacheEntry) -> Optional[Fetcher]:
        """Fetcher stored on the entry, else the one the resolver builds for its key."""
        if entry.fetcher is None and self.fetcher_resolver is not None:
            try:
                entry.fetcher = self.fetcher_resolver(entry.key)
            except TicketCacheException as exc:
                self.logger.warning("Could not resolve fetcher for key", key=entry.key, error=exc.message)
        return entry.fetcher

    def get_data(self, key: str) -> Any:
        """Raw cached value without freshness bookkeeping."""
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def peek(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def keys(self) -> List[str]:
        return list(self._entries)

    def is_fetching(self, key: str) -> bool:
        return key in self._in_flight

    async def read(self, key: str, fetcher: Fetcher, policy: Optional[QueryPolicy] = None) -> CacheLookup:
        """Read-through: cached value if present (refreshing when stale), else fetch."""
        entry = self._entries.get(key)
        if entry is not None and entry.fetcher is None:
            entry.fetcher = fetcher

        lookup = self.get(key)
        if lookup is not None:
            return lookup

        value = await self.fetch(key, fetcher, policy)
        stored = self._entries.get(key)
        if stored is None or stored.value is not value:
            # Superseded by a direct write or removal while fetching
            return CacheLookup(value=value, is_stale=True, fetched_at=self._clock())
        return CacheLookup(
            value=stored.value,
            is_stale=stored.is_stale(self._clock()),
            fetched_at=stored.fetched_at,
            error=stored.error,
        )

    async def fetch(self, key: str, fetcher: Fetcher, policy: Optional[QueryPolicy] = None) -> Any:
        """Fetch ``key`` remotely and store the result.

        Concurrent calls for the same key share one underlying request and
        all resolve with its result. Cancelling one waiter does not cancel
        the shared request.
        """
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run_fetch(key, fetcher, policy or self.policy_for(key)))
            self._in_flight[key] = task
            task.add_done_callback(partial(self._finish_in_flight, key))
        else:
            self.logger.debug("Joining in-flight fetch", key=key)
        return await asyncio.shield(task)

    async def _run_fetch(self, key: str, fetcher: Fetcher, policy: QueryPolicy) -> Any:
        # Runs in its own task, so the key stays bound to this fetch only
        set_cache_key(key)
        kind = query_kind_of(key)
        generation = self._generations.get(key, 0)
        epoch = self._invalidation_epochs.get(key, 0)
        start = time.perf_counter()

        try:
            value = await call_with_retry(
                partial(self._call_fetcher, fetcher),
                (TransportFailure,),
                self.retry_config,
                name=f"fetch.{kind}",
            )
        except Exception as exc:
            self._record_fetch_failure(key, exc)
            raise
        finally:
            self._observe("cache_fetch_duration_seconds", time.perf_counter() - start, query_kind=kind)

        if self._generations.get(key, 0) != generation:
            self.logger.debug("Discarding fetch result superseded by a direct write", key=key)
            self._count("cache_fetches_total", query_kind=kind, result="superseded")
            return value

        self._count("cache_fetches_total", query_kind=kind, result="success")
        entry = self._write(key, value, policy=policy, fetched_at=self._clock())
        entry.invalidated = self._invalidation_epochs.get(key, 0) != epoch
        entry.fetcher = fetcher
        self._publish(CacheEventType.UPDATED, entry)
        return value

    async def _call_fetcher(self, fetcher: Fetcher) -> Any:
        if self.fetch_timeout is None:
            return await fetcher()
        try:
            return await asyncio.wait_for(fetcher(), timeout=self.fetch_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportFailure(
                f"Request timed out after {self.fetch_timeout:g}s",
                details={"timeout": self.fetch_timeout},
            ) from exc

    def _record_fetch_failure(self, key: str, exc: Exception) -> None:
        kind = query_kind_of(key)
        message = exc.message if isinstance(exc, TicketCacheException) else str(exc)
        self._count("cache_fetches_total", query_kind=kind, result="error")
        if self.metrics is not None:
            self.metrics.record_error(type(exc).__name__)

        entry = self._entries.get(key)
        self.logger.warning(
            "Fetch failed",
            key=key,
            error=message,
            error_type=type(exc).__name__,
            kept_previous=entry is not None
        )
        if entry is None:
            return
        entry.invalidated = True
        entry.error = message
        self._publish(CacheEventType.FETCH_FAILED, entry)

    def _finish_in_flight(self, key: str, task: "asyncio.Future[Any]") -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
            self._prune_counters(key)
        if not task.cancelled():
            # Mark the exception retrieved; waiters already received it
            task.exception()

    def _schedule_refresh(self, key: str, fetcher: Fetcher, policy: QueryPolicy) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("No running event loop, background refresh skipped", key=key)
            return
        task = loop.create_task(self._refresh(key, fetcher, policy))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh(self, key: str, fetcher: Fetcher, policy: QueryPolicy) -> None:
        try:
            await self.fetch(key, fetcher, policy)
        except TicketCacheException as exc:
            self.logger.info("Background refresh failed, serving last known value", key=key, error=exc.message)
        except Exception as exc:
            self.logger.error("Background refresh raised unexpected error", key=key, error=str(exc), exc_info=True)

    async def drain(self) -> None:
        """Wait for background refreshes and in-flight fetches to settle."""
        while self._background or self._in_flight:
            pending = list(self._background) + list(self._in_flight.values())
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_data(
        self,
        key: str,
        value: Any,
        *,
        fetched_at: Optional[float] = None,
        stale: bool = False,
        policy: Optional[QueryPolicy] = None,
        fetcher: Optional[Fetcher] = None,
    ) -> CacheEntry:
        """Write ``value`` directly, superseding any fetch already under way.

        ``fetcher`` reattaches the way to refresh the key, for example when
        restoring an entry that was removed.
        """
        self._generations[key] = self._generations.get(key, 0) + 1
        entry = self._write(
            key,
            value,
            policy=policy or self.policy_for(key),
            fetched_at=self._clock() if fetched_at is None else fetched_at,
        )
        entry.invalidated = stale
        if fetcher is not None:
            entry.fetcher = fetcher
        self._publish(CacheEventType.UPDATED, entry)
        return entry

    def remove(self, key: str) -> Optional[CacheEntry]:
        """Drop ``key``, superseding any fetch already under way."""
        self._generations[key] = self._generations.get(key, 0) + 1
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._update_size()
            self._publish(CacheEventType.REMOVED, entry)
        self._prune_counters(key)
        return entry

    def _prune_counters(self, key: str) -> None:
        # Counters only matter while an entry or a fetch exists for the key
        if key in self._entries or key in self._in_flight:
            return
        self._generations.pop(key, None)
        self._invalidation_epochs.pop(key, None)

    def _write(self, key: str, value: Any, *, policy: QueryPolicy, fetched_at: float) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(
                key=key,
                value=value,
                fetched_at=fetched_at,
                policy=policy,
                ref_count=self._ref_counts.get(key, 0),
            )
            self._entries[key] = entry
            self._update_size()
        else:
            entry.value = value
            entry.fetched_at = fetched_at
            entry.policy = policy
        entry.error = None
        return entry

    # ------------------------------------------------------------------
    # Invalidation and eviction
    # ------------------------------------------------------------------

    def invalidate(self, match: Union[KeyPredicate, str]) -> List[str]:
        """Mark matching entries stale.

        ``match`` is either a predicate over keys or a ticket id. A ticket id
        matches its detail and comments keys and every list whose tickets
        include it. Fetches in flight for matching keys will store their
        result as stale. Returns the matched keys.
        """
        if callable(match):
            predicate = match
        else:
            predicate = partial(self._concerns_entity, match)

        matched: List[str] = []
        for key in sorted(set(self._entries) | set(self._in_flight)):
            if not predicate(key):
                continue
            matched.append(key)
            self._invalidation_epochs[key] = self._invalidation_epochs.get(key, 0) + 1
            entry = self._entries.get(key)
            if entry is not None:
                entry.invalidated = True
                self._publish(CacheEventType.INVALIDATED, entry)

        if matched:
            self.logger.debug("Invalidated cache keys", count=len(matched))
        return matched

    def _concerns_entity(self, entity_id: str, key: str) -> bool:
        if entity_id_of(key) == entity_id:
            return True
        entry = self._entries.get(key)
        return entry is not None and isinstance(entry.value, TicketListResponse) and entry.value.contains(entity_id)

    def evict(self, now: Optional[float] = None) -> List[str]:
        """Remove unreferenced entries idle for longer than their retention window."""
        current = self._clock() if now is None else now
        evicted: List[str] = []
        for key, entry in list(self._entries.items()):
            if self._ref_counts.get(key, 0) > 0 or key in self._in_flight:
                continue
            if current - entry.idle_since() < entry.policy.gc_time:
                continue
            del self._entries[key]
            self._generations.pop(key, None)
            self._invalidation_epochs.pop(key, None)
            evicted.append(key)
            self._count("cache_evictions_total", query_kind=query_kind_of(key))
            self._publish(CacheEventType.EVICTED, entry)

        if evicted:
            self._update_size()
            self.logger.info("Evicted idle cache entries", count=len(evicted))
        return evicted

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def retain(self, key: str) -> int:
        """Register a consumer of ``key``."""
        count = self._ref_counts.get(key, 0) + 1
        self._ref_counts[key] = count
        entry = self._entries.get(key)
        if entry is not None:
            entry.ref_count = count
        return count

    def release(self, key: str) -> int:
        """Drop a consumer of ``key``; the retention window starts at zero."""
        count = self._ref_counts.get(key, 0)
        if count == 0:
            self.logger.warning("Release without matching retain", key=key)
            return 0
        count -= 1
        if count:
            self._ref_counts[key] = count
        else:
            del self._ref_counts[key]
        entry = self._entries.get(key)
        if entry is not None:
            entry.ref_count = count
            if count == 0:
                entry.released_at = self._clock()
        return count

    def ref_count(self, key: str) -> int:
        return self._ref_counts.get(key, 0)

    # ------------------------------------------------------------------
    # Teardown and stats
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Cancel outstanding work and discard every entry."""
        tasks = list(self._background) + list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.clear()

    def clear(self) -> None:
        self._entries.clear()
        self._ref_counts.clear()
        self._generations.clear()
        self._invalidation_epochs.clear()
        self._update_size()

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "entries": len(self._entries),
            "stale_entries": sum(1 for entry in self._entries.values() if entry.is_stale(now)),
            "in_flight": len(self._in_flight),
            "referenced_keys": len(self._ref_counts),
            "background_refreshes": len(self._background),
        }

    def _publish(self, event_type: CacheEventType, entry: CacheEntry) -> None:
        topics = [entry.key]
        entity_id = entity_id_of(entry.key)
        if entity_id is not None:
            topics.append(entity_id)
        self.registry.publish(
            topics,
            CacheEvent(
                type=event_type,
                key=entry.key,
                value=entry.value,
                is_stale=entry.is_stale(self._clock()),
                error=entry.error,
            ),
        )

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(metric_name, **labels)

    def _observe(self, metric_name: str, value: float, **labels) -> None:
        if self.metrics is not None:
            self.metrics.observe_histogram(metric_name, value, **labels)

    def _update_size(self) -> None:
        if self.metrics is not None:
            self.metrics.set_gauge("cache_entries", len(self._entries))
