"""
Read surface for tickets and comments.

Binds filter specs and ticket ids to cache keys, fetchers and freshness
policies, and gives consumers retained subscriptions on the keys they
display.
"""

from functools import partial
from typing import Any, Mapping, Optional, Union

from shared.logging import get_logger

from .adapters.tickets_client import TicketsClient
from .caching.fingerprint import (
    FingerprintCodec,
    comments_key,
    detail_key,
    entity_id_of,
    is_comments_key,
    is_detail_key,
)
from .caching.query_cache import CacheLookup, Fetcher, QueryCache
from .caching.subscriptions import Listener, Subscription
from .models import FilterSpec, TicketListResponse
from .mutations.coordinator import MUTATIONS_TOPIC


FilterInput = Union[FilterSpec, Mapping[str, Any], None]


class TicketQueries:
    """Cached reads of ticket lists, ticket details and comment lists."""

    def __init__(self, cache: QueryCache, client: TicketsClient, codec: Optional[FingerprintCodec] = None):
        self.cache = cache
        self.client = client
        self.codec = codec or FingerprintCodec()
        self.logger = get_logger("ticket_cache.queries")

    # ------------------------------------------------------------------
    # Ticket lists
    # ------------------------------------------------------------------

    def list_key(self, spec: FilterInput = None) -> str:
        return self.codec.list_key(spec)

    def get_tickets(self, spec: FilterInput = None) -> Optional[CacheLookup]:
        """Cached page for ``spec`` without waiting; ``None`` on a miss."""
        return self.cache.get(self.list_key(spec))

    async def read_tickets(self, spec: FilterInput = None) -> CacheLookup:
        """Cached page for ``spec``, fetching it on a miss."""
        filters = self.codec.parse(spec)
        return await self.cache.read(self.list_key(filters), self._list_fetcher(filters))

    async def fetch_tickets(self, spec: FilterInput = None) -> TicketListResponse:
        """Fetch a page from the API regardless of freshness."""
        filters = self.codec.parse(spec)
        return await self.cache.fetch(self.list_key(filters), self._list_fetcher(filters))

    def _list_fetcher(self, filters: FilterSpec):
        return partial(self.client.list_tickets, self.codec.to_query_params(filters))

    # ------------------------------------------------------------------
    # Ticket details and comments
    # ------------------------------------------------------------------

    async def read_ticket(self, ticket_id: str) -> CacheLookup:
        """Cached ticket with all comments, fetching it on a miss."""
        return await self.cache.read(detail_key(ticket_id), partial(self.client.get_ticket, ticket_id))

    async def read_comments(self, ticket_id: str) -> CacheLookup:
        """Cached comments of a ticket, oldest first."""
        return await self.cache.read(comments_key(ticket_id), partial(self.client.list_comments, ticket_id))

    def fetcher_for(self, key: str) -> Optional[Fetcher]:
        """Rebuild the fetcher for a cache key, for entries written without one."""
        fingerprint = self.codec.fingerprint_of(key)
        if fingerprint is not None:
            return self._list_fetcher(self.codec.decode(fingerprint))
        ticket_id = entity_id_of(key)
        if ticket_id is None:
            return None
        if is_detail_key(key):
            return partial(self.client.get_ticket, ticket_id)
        if is_comments_key(key):
            return partial(self.client.list_comments, ticket_id)
        return None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def watch_tickets(self, spec: FilterInput, listener: Listener) -> Subscription:
        """Subscribe to a list page; the page is kept from eviction until unsubscribed."""
        return self._watch(self.list_key(spec), listener)

    def watch_ticket(self, ticket_id: str, listener: Listener) -> Subscription:
        return self._watch(detail_key(ticket_id), listener)

    def watch_comments(self, ticket_id: str, listener: Listener) -> Subscription:
        return self._watch(comments_key(ticket_id), listener)

    def watch_mutations(self, listener: Listener) -> Subscription:
        """Subscribe to mutation lifecycle events (pending-submission indicators)."""
        return self.cache.registry.subscribe(MUTATIONS_TOPIC, listener)

    def _watch(self, key: str, listener: Listener) -> Subscription:
        self.cache.retain(key)
        return self.cache.registry.subscribe(key, listener, on_close=partial(self.cache.release, key))
