"""
Ticket caching package.

Maps filter specs to canonical keys and keeps query results in memory with
per-kind freshness and retention windows. Stale entries are served while
they refresh; writes from the mutation coordinator always win over fetches
that started before them.
"""

from .fingerprint import FingerprintCodec, comments_key, detail_key, is_list_key
from .query_cache import CacheEntry, CacheLookup, QueryCache, QueryPolicy
from .subscriptions import CacheEvent, CacheEventType, Subscription, SubscriptionRegistry
