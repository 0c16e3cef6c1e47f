"""
Fingerprint codec for ticket list filters.

A fingerprint is the canonical form of a FilterSpec: defaults applied,
default-valued fields dropped, remaining fields sorted by name and joined as
percent-encoded ``key=value`` pairs. The same string is the canonical query
string, so ``decode`` can rebuild the filter spec from either.
"""

from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, quote

from ..models import FilterSpec, SortField, SortOrder, parse_model
from shared.errors import ValidationFailure


LIST_PREFIX = "tickets:list:"
DETAIL_PREFIX = "tickets:detail:"
COMMENTS_PREFIX = "comments:list:"

PAIR_DELIMITER = "&"

# Wire name -> attribute name
FILTER_FIELDS: Dict[str, str] = {
    "page": "page",
    "limit": "limit",
    "sortBy": "sort_by",
    "sortOrder": "sort_order",
    "status": "status",
    "priority": "priority",
    "search": "search",
}


class FingerprintCodec:
    """Encodes FilterSpecs to stable cache keys and query strings, and back."""

    def __init__(self, default_limit: int = 10, server_default_limit: int = 10):
        if not 1 <= default_limit <= 100:
            raise ValueError("default_limit must be between 1 and 100")
        self.default_limit = default_limit
        self.server_default_limit = server_default_limit
        self._defaults: Dict[str, Any] = {
            "page": 1,
            "limit": default_limit,
            "sortBy": SortField.CREATED_AT.value,
            "sortOrder": SortOrder.DESC.value,
            "status": None,
            "priority": None,
            "search": None,
        }

    def parse(self, raw: Union[FilterSpec, Mapping[str, Any], None]) -> FilterSpec:
        """Validate loose filter input (wire or attribute names, string values)."""
        if raw is None:
            return FilterSpec()
        if isinstance(raw, FilterSpec):
            return raw
        unknown = [key for key in raw if key not in FILTER_FIELDS and key not in FILTER_FIELDS.values()]
        if unknown:
            raise ValidationFailure(
                "Unknown filter fields",
                details={"fields": sorted(unknown)},
            )
        cleaned = {key: value for key, value in raw.items() if value is not None and value != ""}
        return parse_model(FilterSpec, cleaned)

    def normalize(self, spec: Union[FilterSpec, Mapping[str, Any], None]) -> List[Tuple[str, str]]:
        """Sorted ``(wire_name, value)`` pairs that differ from the defaults."""
        filters = self.parse(spec)
        pairs: List[Tuple[str, str]] = []
        for wire_name in sorted(FILTER_FIELDS):
            value = self._wire_value(getattr(filters, FILTER_FIELDS[wire_name]))
            if wire_name == "limit" and value is None:
                value = self.default_limit
            if value is None or value == self._defaults[wire_name]:
                continue
            pairs.append((wire_name, str(value)))
        return pairs

    def encode(self, spec: Union[FilterSpec, Mapping[str, Any], None]) -> str:
        """Canonical fingerprint of a filter spec."""
        return PAIR_DELIMITER.join(
            f"{name}={quote(value, safe='')}" for name, value in self.normalize(spec)
        )

    def decode(self, fingerprint: str) -> FilterSpec:
        """Rebuild the FilterSpec a fingerprint was encoded from."""
        values: Dict[str, Any] = {}
        try:
            pairs = parse_qsl(fingerprint, keep_blank_values=True, strict_parsing=bool(fingerprint))
        except ValueError as exc:
            raise ValidationFailure("Malformed fingerprint", details={"fingerprint": fingerprint}) from exc
        for name, value in pairs:
            if name not in FILTER_FIELDS or name in values:
                raise ValidationFailure("Malformed fingerprint", details={"fingerprint": fingerprint})
            values[name] = value
        values.setdefault("limit", self.default_limit)
        return self.parse(values)

    def to_query_string(self, spec: Union[FilterSpec, Mapping[str, Any], None]) -> str:
        """Canonical query string; identical to the fingerprint."""
        return self.encode(spec)

    def to_query_params(self, spec: Union[FilterSpec, Mapping[str, Any], None]) -> Dict[str, str]:
        """Parameters for ``GET /tickets``.

        ``limit`` is always sent when the surface default differs from the
        server's own default, so both sides agree on the page size.
        """
        params = dict(self.normalize(spec))
        if "limit" not in params and self.default_limit != self.server_default_limit:
            params["limit"] = str(self.default_limit)
        return params

    def list_key(self, spec: Union[FilterSpec, Mapping[str, Any], None]) -> str:
        return f"{LIST_PREFIX}{self.encode(spec)}"

    def fingerprint_of(self, key: str) -> Optional[str]:
        """Fingerprint part of a list key, ``None`` for other keys."""
        if not is_list_key(key):
            return None
        return key[len(LIST_PREFIX):]

    @staticmethod
    def _wire_value(value: Any) -> Any:
        return getattr(value, "value", value)


def detail_key(ticket_id: str) -> str:
    return f"{DETAIL_PREFIX}{ticket_id}"


def comments_key(ticket_id: str) -> str:
    return f"{COMMENTS_PREFIX}{ticket_id}"


def is_list_key(key: str) -> bool:
    return key.startswith(LIST_PREFIX)


def is_detail_key(key: str) -> bool:
    return key.startswith(DETAIL_PREFIX)


def is_comments_key(key: str) -> bool:
    return key.startswith(COMMENTS_PREFIX)


def entity_id_of(key: str) -> Optional[str]:
    """Ticket id addressed by a detail or comments key."""
    for prefix in (DETAIL_PREFIX, COMMENTS_PREFIX):
        if key.startswith(prefix):
            return key[len(prefix):]
    return None


def query_kind_of(key: str) -> str:
    """Short label used for policies and metrics."""
    if is_list_key(key):
        return "list"
    if is_detail_key(key):
        return "detail"
    if is_comments_key(key):
        return "comments"
    return "other"
