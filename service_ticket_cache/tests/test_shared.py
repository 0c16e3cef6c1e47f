"""
Unit tests for shared errors, retry and logging helpers.
"""

import pytest
import structlog
from unittest.mock import AsyncMock, patch

from shared.errors import (
    ErrorPayload,
    NotFoundDuringMutation,
    RemoteFailure,
    TransportFailure,
    ValidationFailure,
    error_message_for,
)
from shared.logging import (
    add_correlation_context,
    add_service_context,
    cache_key_var,
    configure_logging,
    get_logger,
    mutation_id_var,
)
from shared.retry import RetryConfig, _calculate_delay, call_with_retry


class TestErrors:
    """Test cases for the error taxonomy."""

    def test_message_precedence(self):
        """message wins over error, error over the status default."""
        assert error_message_for(400, ErrorPayload(error="Bad", message="Title missing")) == "Title missing"
        assert error_message_for(400, ErrorPayload(error="Bad")) == "Bad"
        assert error_message_for(400, ErrorPayload()) == "Invalid request. Please check your input."
        assert error_message_for(429) == "Too many requests. Please try again later."

    def test_to_dict(self):
        exc = ValidationFailure("Invalid FilterSpec", details={"issues": []})

        assert exc.to_dict() == {
            "code": "VALIDATION_ERROR",
            "message": "Invalid FilterSpec",
            "details": {"issues": []},
        }

    def test_not_found_during_mutation(self):
        exc = NotFoundDuringMutation("t1")

        assert isinstance(exc, RemoteFailure)
        assert exc.is_not_found
        assert exc.code == "NOT_FOUND_DURING_MUTATION"
        assert exc.message == "Ticket t1 was not found"
        assert exc.details == {"entity_id": "t1"}

    def test_remote_failure_default_message(self):
        assert RemoteFailure(502).message == "Service temporarily unavailable."
        assert not RemoteFailure(500).is_not_found


class TestRetry:
    """Test cases for call_with_retry."""

    @pytest.mark.asyncio
    async def test_retries_listed_exceptions(self):
        func = AsyncMock(side_effect=[TransportFailure(), "ok"])

        with patch("shared.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await call_with_retry(func, (TransportFailure,), RetryConfig(max_attempts=2, jitter=False))

        assert result == "ok"
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate_immediately(self):
        func = AsyncMock(side_effect=RemoteFailure(500))

        with pytest.raises(RemoteFailure):
            await call_with_retry(func, (TransportFailure,), RetryConfig(max_attempts=3))
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_last_exception_is_reraised(self):
        last = TransportFailure("still down")
        func = AsyncMock(side_effect=[TransportFailure(), last])

        with patch("shared.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(TransportFailure) as exc_info:
                await call_with_retry(func, (TransportFailure,), RetryConfig(max_attempts=2))

        assert exc_info.value is last

    @pytest.mark.parametrize("strategy,attempt,expected", [
        ("exponential", 1, 1.0),
        ("exponential", 3, 4.0),
        ("exponential", 10, 30.0),
        ("linear", 3, 3.0),
        ("fixed", 5, 1.0),
    ])
    def test_delay_strategies(self, strategy, attempt, expected):
        config = RetryConfig(base_delay=1.0, max_delay=30.0, jitter=False, backoff_strategy=strategy)

        assert _calculate_delay(attempt, config) == expected

    def test_jitter_stays_within_ten_percent(self):
        config = RetryConfig(base_delay=1.0, jitter=True)

        for _ in range(20):
            assert 0.9 <= _calculate_delay(1, config) <= 1.1


class TestLoggingProcessors:
    """Test cases for structlog processors."""

    def test_correlation_context(self):
        mutation_token = mutation_id_var.set("m-1")
        key_token = cache_key_var.set("tickets:detail:t1")
        try:
            event = add_correlation_context(None, "info", {"event": "Mutation started"})
        finally:
            mutation_id_var.reset(mutation_token)
            cache_key_var.reset(key_token)

        assert event["mutation_id"] == "m-1"
        assert event["key"] == "tickets:detail:t1"

    def test_explicit_key_is_kept(self):
        token = cache_key_var.set("tickets:detail:t1")
        try:
            event = add_correlation_context(None, "info", {"event": "Fetch failed", "key": "tickets:list:"})
        finally:
            cache_key_var.reset(token)

        assert event["key"] == "tickets:list:"
        assert "mutation_id" not in event

    def test_component_from_logger_name(self):
        event = add_service_context(None, "info", {"logger": "ticket_cache.query_cache"})

        assert event["component"] == "query_cache"

    def test_configure_logging_binds_service(self):
        configure_logging("ticket-cache", "debug")
        try:
            assert structlog.contextvars.get_contextvars()["service"] == "ticket-cache"
            get_logger("ticket_cache.tests").info("Logging configured")
        finally:
            structlog.contextvars.clear_contextvars()
            structlog.reset_defaults()
