"""
Unit tests for the fingerprint codec.
"""

import pytest

from service_ticket_cache.app.caching.fingerprint import (
    FingerprintCodec,
    comments_key,
    detail_key,
    entity_id_of,
    is_list_key,
    query_kind_of,
)
from service_ticket_cache.app.models import FilterSpec, SortField, TicketStatus
from shared.errors import ValidationFailure


class TestFingerprintCodec:
    """Test cases for FingerprintCodec."""

    @pytest.fixture
    def codec(self):
        """Codec for the server's default page size."""
        return FingerprintCodec()

    @pytest.fixture
    def list_codec(self):
        """Codec for the ticket list surface (12 per page)."""
        return FingerprintCodec(default_limit=12, server_default_limit=10)

    def test_defaults_encode_to_empty_fingerprint(self, codec):
        """Explicit defaults and absent fields produce the same fingerprint."""
        assert codec.encode(None) == ""
        assert codec.encode({}) == ""
        assert codec.encode({"page": 1, "limit": 10, "sortBy": "createdAt", "sortOrder": "desc"}) == ""

    def test_field_order_does_not_matter(self, codec):
        """Semantically equal specs encode identically."""
        first = codec.encode({"status": "OPEN", "sortBy": "priority", "sortOrder": "desc", "page": 1, "limit": 10})
        second = codec.encode({"limit": 10, "page": 1, "sortOrder": "desc", "sortBy": "priority", "status": "OPEN"})

        assert first == second == "sortBy=priority&status=OPEN"

    def test_attribute_names_and_models_are_accepted(self, codec):
        """Wire names, attribute names and FilterSpec instances agree."""
        spec = FilterSpec(sort_by=SortField.PRIORITY, status=TicketStatus.OPEN)

        assert codec.encode(spec) == codec.encode({"sort_by": "priority", "status": "OPEN"})

    def test_strings_are_coerced(self, codec):
        """Query-string values are coerced to integers."""
        assert codec.encode({"page": "2", "limit": "20"}) == "limit=20&page=2"

    def test_search_is_trimmed(self, codec):
        """Whitespace-only search is treated as absent."""
        assert codec.encode({"search": "   "}) == ""
        assert codec.encode({"search": "  printer jam "}) == "search=printer%20jam"

    def test_values_are_percent_encoded(self, codec):
        """Delimiters inside values cannot break the fingerprint."""
        fingerprint = codec.encode({"search": "a&b=c"})

        assert fingerprint == "search=a%26b%3Dc"
        assert codec.decode(fingerprint).search == "a&b=c"

    @pytest.mark.parametrize("raw", [
        {"limit": 0},
        {"limit": 101},
        {"page": 0},
        {"status": "BOGUS"},
        {"sortBy": "ticketNumber"},
        {"sortOrder": "sideways"},
        {"page": "two"},
    ])
    def test_invalid_values_are_rejected(self, codec, raw):
        """Out-of-range and unknown values fail validation rather than clamping."""
        with pytest.raises(ValidationFailure):
            codec.encode(raw)

    def test_unknown_fields_are_rejected(self, codec):
        """Unknown filter fields fail validation."""
        with pytest.raises(ValidationFailure) as exc_info:
            codec.parse({"assignee": "bob"})

        assert exc_info.value.details["fields"] == ["assignee"]

    def test_decode_is_left_inverse_of_encode(self, codec):
        """encode(decode(f)) == f for the codec's own output."""
        specs = [
            {},
            {"status": "OPEN", "sortBy": "priority"},
            {"page": 3, "limit": 25, "sortOrder": "asc"},
            {"priority": "CRITICAL", "search": "disk full", "sortBy": "updatedAt"},
        ]
        for spec in specs:
            fingerprint = codec.encode(spec)
            assert codec.encode(codec.decode(fingerprint)) == fingerprint

    def test_decode_applies_defaults(self, codec):
        """Decoding restores default-valued fields."""
        spec = codec.decode("status=CLOSED")

        assert spec.page == 1
        assert spec.limit == 10
        assert spec.sort_by == SortField.CREATED_AT
        assert spec.status == TicketStatus.CLOSED

    @pytest.mark.parametrize("fingerprint", [
        "bogus=1",
        "status=OPEN&status=CLOSED",
        "novalue",
    ])
    def test_decode_rejects_malformed_fingerprints(self, codec, fingerprint):
        """Fingerprints the codec could not have produced are rejected."""
        with pytest.raises(ValidationFailure):
            codec.decode(fingerprint)

    def test_surface_default_limit(self, list_codec):
        """A surface default differing from the server's is sent explicitly."""
        assert list_codec.encode({}) == ""
        assert list_codec.encode({"limit": 12}) == ""
        assert list_codec.encode({"limit": 10}) == "limit=10"
        assert list_codec.decode("").limit == 12
        assert list_codec.to_query_params({}) == {"limit": "12"}
        assert list_codec.to_query_params({"limit": 10}) == {"limit": "10"}

    def test_query_params(self, codec):
        """Query params carry only non-default fields."""
        assert codec.to_query_params({"status": "OPEN", "page": 1}) == {"status": "OPEN"}
        assert codec.to_query_string({"status": "OPEN"}) == codec.encode({"status": "OPEN"})

    def test_invalid_default_limit(self):
        with pytest.raises(ValueError):
            FingerprintCodec(default_limit=0)


class TestCacheKeys:
    """Test cases for cache key helpers."""

    def test_list_key_round_trip(self):
        codec = FingerprintCodec()
        key = codec.list_key({"status": "OPEN"})

        assert key == "tickets:list:status=OPEN"
        assert is_list_key(key)
        assert codec.fingerprint_of(key) == "status=OPEN"
        assert codec.fingerprint_of(detail_key("t1")) is None

    def test_entity_keys(self):
        assert entity_id_of(detail_key("t1")) == "t1"
        assert entity_id_of(comments_key("t1")) == "t1"
        assert entity_id_of("tickets:list:") is None

    def test_query_kinds(self):
        assert query_kind_of("tickets:list:") == "list"
        assert query_kind_of(detail_key("t1")) == "detail"
        assert query_kind_of(comments_key("t1")) == "comments"
        assert query_kind_of("something:else") == "other"
