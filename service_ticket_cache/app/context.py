"""
Cache context: owns the query cache, the API client and the mutation coordinator.

Nothing lives at module level. A context is built, started, used and
closed; closing discards every cached entry and subscription.
"""

import asyncio
import time
from typing import Callable, Optional

import httpx

from shared.config import CacheSettings, get_settings
from shared.logging import configure_logging, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.retry import RetryConfig

from .adapters.tickets_client import TicketsClient
from .caching.fingerprint import FingerprintCodec
from .caching.query_cache import QueryCache, QueryPolicy
from .caching.subscriptions import SubscriptionRegistry
from .mutations.coordinator import MutationCoordinator
from .queries import TicketQueries


SERVICE_NAME = "ticket-cache"


class TicketCacheContext:
    """Explicit owner of the ticket data layer."""

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        tickets_client: Optional[TicketsClient] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
        setup_logging: bool = False,
    ):
        self.settings = settings or get_settings()
        if setup_logging:
            configure_logging(SERVICE_NAME, self.settings.log_level)
        self.logger = get_logger("ticket_cache.context")

        self.metrics = metrics or get_metrics_collector(SERVICE_NAME)
        self.registry = SubscriptionRegistry()
        self.cache = QueryCache(
            self.build_policies(self.settings),
            registry=self.registry,
            metrics=self.metrics,
            retry_config=RetryConfig(
                max_attempts=self.settings.read_retry_attempts,
                base_delay=self.settings.retry_base_delay_seconds,
                max_delay=self.settings.retry_max_delay_seconds,
            ),
            fetch_timeout=self.settings.request_timeout_seconds,
            clock=clock,
        )
        self.client = tickets_client or TicketsClient(
            self.settings.api_base_url,
            timeout=self.settings.request_timeout_seconds,
            client=http_client,
        )
        self.codec = FingerprintCodec(
            default_limit=self.settings.list_page_limit,
            server_default_limit=self.settings.default_page_limit,
        )
        self.queries = TicketQueries(self.cache, self.client, self.codec)
        self.cache.fetcher_resolver = self.queries.fetcher_for
        self.mutations = MutationCoordinator(
            self.cache,
            self.client,
            timeout=self.settings.mutation_timeout_seconds,
            metrics=self.metrics,
        )

        self._eviction_task: Optional[asyncio.Task] = None
        self.running = False

    @staticmethod
    def build_policies(settings: CacheSettings):
        return {
            "list": QueryPolicy(settings.list_stale_seconds, settings.list_gc_seconds),
            "detail": QueryPolicy(settings.detail_stale_seconds, settings.detail_gc_seconds),
            "comments": QueryPolicy(settings.comments_stale_seconds, settings.comments_gc_seconds),
        }

    async def start(self) -> None:
        """Start the eviction sweeper."""
        if self.running:
            return
        self.running = True
        self._eviction_task = asyncio.create_task(self._eviction_loop())
        self.logger.info(
            "Ticket cache context started",
            api_base_url=self.settings.api_base_url,
            eviction_interval=self.settings.eviction_interval_seconds
        )

    async def close(self) -> None:
        """Stop background work, close the client and discard all cached state."""
        self.running = False
        if self._eviction_task:
            self._eviction_task.cancel()
            try:
                await self._eviction_task
            except asyncio.CancelledError:
                pass
            self._eviction_task = None

        await self.cache.close()
        self.registry.clear()
        await self.client.aclose()
        self.logger.info("Ticket cache context closed")

    async def __aenter__(self) -> "TicketCacheContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _eviction_loop(self) -> None:
        """Periodically drop unreferenced entries past their retention window."""
        while self.running:
            await asyncio.sleep(self.settings.eviction_interval_seconds)
            try:
                self.cache.evict()
            except Exception as e:
                self.logger.error("Error in eviction loop", error=str(e), exc_info=True)
