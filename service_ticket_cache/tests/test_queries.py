"""
Unit tests for the ticket read surface.
"""

import asyncio

import pytest

from service_ticket_cache.app.caching.fingerprint import FingerprintCodec, comments_key, detail_key
from service_ticket_cache.app.caching.query_cache import QueryCache
from service_ticket_cache.app.caching.subscriptions import CacheEventType
from service_ticket_cache.app.models import TicketStatus
from service_ticket_cache.app.mutations.coordinator import MutationCoordinator
from service_ticket_cache.app.queries import TicketQueries
from shared.errors import ValidationFailure
from shared.retry import RetryConfig
from shared.test_helpers import FakeClock, FakeTicketsApi, TicketFactory


class TestTicketQueries:
    """Test cases for TicketQueries."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def api(self):
        tickets = [
            TicketFactory.ticket(id="t1", status=TicketStatus.OPEN),
            TicketFactory.ticket(id="t2", status=TicketStatus.CLOSED),
        ]
        return FakeTicketsApi(tickets, comments={"t1": [TicketFactory.comment("t1", id="c1")]})

    @pytest.fixture
    def cache(self, clock):
        return QueryCache(retry_config=RetryConfig(max_attempts=2, base_delay=0, jitter=False), clock=clock)

    @pytest.fixture
    def queries(self, cache, api):
        return TicketQueries(cache, api, FingerprintCodec(default_limit=12, server_default_limit=10))

    @pytest.mark.asyncio
    async def test_read_tickets_fetches_once(self, queries, api):
        """A miss fetches with canonical params; the next read hits the cache."""
        first = await queries.read_tickets({"status": "OPEN"})
        second = await queries.read_tickets({"status": "OPEN", "page": 1, "sortOrder": "desc"})

        assert [t.id for t in first.value.tickets] == ["t1"]
        assert second.value is first.value
        assert api.calls["list_tickets"] == 1
        assert api.requests[0] == ("list_tickets", {"status": "OPEN", "limit": "12"})

    @pytest.mark.asyncio
    async def test_get_tickets_never_fetches(self, queries, api):
        assert queries.get_tickets({"status": "OPEN"}) is None
        assert api.calls["list_tickets"] == 0

        await queries.read_tickets({"status": "OPEN"})
        assert queries.get_tickets({"status": "OPEN"}).is_stale is False

    @pytest.mark.asyncio
    async def test_fetch_tickets_ignores_freshness(self, queries, api):
        await queries.read_tickets()
        await queries.fetch_tickets()

        assert api.calls["list_tickets"] == 2

    @pytest.mark.asyncio
    async def test_invalid_filters_are_rejected(self, queries, api, cache):
        with pytest.raises(ValidationFailure):
            await queries.read_tickets({"limit": 500})

        assert api.calls["list_tickets"] == 0
        assert cache.keys() == []

    @pytest.mark.asyncio
    async def test_read_ticket_and_comments(self, queries, cache):
        detail = await queries.read_ticket("t1")
        comments = await queries.read_comments("t1")

        assert detail.value.id == "t1"
        assert [c.id for c in detail.value.comments] == ["c1"]
        assert [c.id for c in comments.value] == ["c1"]
        assert set(cache.keys()) == {detail_key("t1"), comments_key("t1")}

    @pytest.mark.asyncio
    async def test_stale_detail_refreshes_from_stored_fetcher(self, queries, cache, api):
        await queries.read_ticket("t1")
        cache.invalidate("t1")

        assert queries.cache.get(detail_key("t1")).is_stale is True
        await cache.drain()

        assert api.calls["get_ticket"] == 2
        assert cache.get(detail_key("t1")).is_stale is False

    @pytest.mark.asyncio
    async def test_fetcher_for_rebuilds_fetchers_from_keys(self, queries, api):
        """Every key the read surface produces maps back to the call that fills it."""
        page = await queries.fetcher_for(queries.list_key({"status": "CLOSED"}))()
        ticket = await queries.fetcher_for(detail_key("t1"))()
        comments = await queries.fetcher_for(comments_key("t1"))()

        assert [t.id for t in page.tickets] == ["t2"]
        assert api.requests[0] == ("list_tickets", {"status": "CLOSED", "limit": "12"})
        assert ticket.id == "t1"
        assert [c.id for c in comments] == ["c1"]
        assert queries.fetcher_for("mutation:m-1") is None

    @pytest.mark.asyncio
    async def test_injected_entry_refreshes_through_resolver(self, queries, cache, api):
        cache.fetcher_resolver = queries.fetcher_for
        cache.set_data(detail_key("t2"), TicketFactory.ticket(id="t2"), stale=True)

        assert cache.get(detail_key("t2")).is_stale is True
        await cache.drain()

        assert api.calls["get_ticket"] == 1
        assert cache.get_data(detail_key("t2")).status == TicketStatus.CLOSED

    @pytest.mark.asyncio
    async def test_watch_retains_until_unsubscribed(self, queries, cache, clock):
        """A watched key is kept from eviction and receives change events."""
        events = []
        subscription = queries.watch_ticket("t1", events.append)
        await queries.read_ticket("t1")

        clock.advance(100_000)
        assert cache.evict() == []
        assert events[0].type == CacheEventType.UPDATED

        subscription.unsubscribe()
        assert cache.ref_count(detail_key("t1")) == 0
        clock.advance(100_000)
        assert cache.evict() == [detail_key("t1")]

    @pytest.mark.asyncio
    async def test_watch_tickets_and_comments(self, queries, cache):
        list_sub = queries.watch_tickets({"status": "OPEN"}, lambda event: None)
        comments_sub = queries.watch_comments("t1", lambda event: None)

        assert cache.ref_count(queries.list_key({"status": "OPEN"})) == 1
        assert cache.ref_count(comments_key("t1")) == 1

        list_sub.unsubscribe()
        comments_sub.unsubscribe()
        assert cache.ref_count(comments_key("t1")) == 0

    @pytest.mark.asyncio
    async def test_watch_mutations(self, queries, cache, api):
        coordinator = MutationCoordinator(cache, api)
        states = []
        queries.watch_mutations(lambda event: states.append(event.value["state"]))

        gate = api.gate("create_ticket")
        task = asyncio.ensure_future(coordinator.create_ticket({"title": "T", "description": "D", "user": "U"}))
        await api.wait_for_call("create_ticket")
        assert states == ["settling"]

        gate.set()
        await task
        assert states == ["settling", "committed"]
