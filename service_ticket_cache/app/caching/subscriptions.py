"""
Subscription registry for cache change notifications.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from shared.logging import get_logger


class CacheEventType(str, Enum):
    """Kinds of cache change."""
    UPDATED = "updated"
    INVALIDATED = "invalidated"
    REMOVED = "removed"
    FETCH_FAILED = "fetch_failed"
    EVICTED = "evicted"
    MUTATION = "mutation"


@dataclass(frozen=True)
class CacheEvent:
    """A change to one cache key (or a mutation lifecycle step)."""
    type: CacheEventType
    key: str
    value: Any = None
    is_stale: bool = False
    error: Optional[str] = None


Listener = Callable[[CacheEvent], None]


@dataclass
class Subscription:
    """Registered interest in a topic (cache key or ticket id)."""
    subscription_id: str
    topic: str
    listener: Listener
    registry: "SubscriptionRegistry" = field(repr=False)
    on_close: Optional[Callable[[], None]] = field(default=None, repr=False)
    active: bool = True

    def unsubscribe(self) -> bool:
        """Stop receiving notifications. Safe to call more than once."""
        if not self.active:
            return False
        self.active = False
        removed = self.registry.remove(self.subscription_id)
        if self.on_close is not None:
            self.on_close()
        return removed


class SubscriptionRegistry:
    """Delivers cache events to listeners keyed by topic."""

    def __init__(self):
        self.logger = get_logger("ticket_cache.subscriptions")
        self.subscriptions: Dict[str, Subscription] = {}
        self.topic_subscriptions: Dict[str, Set[str]] = {}  # topic -> subscription_ids

    def subscribe(
        self,
        topic: str,
        listener: Listener,
        on_close: Optional[Callable[[], None]] = None,
    ) -> Subscription:
        """Register ``listener`` for events published on ``topic``."""
        subscription = Subscription(
            subscription_id=str(uuid.uuid4()),
            topic=topic,
            listener=listener,
            registry=self,
            on_close=on_close,
        )
        self.subscriptions[subscription.subscription_id] = subscription
        self.topic_subscriptions.setdefault(topic, set()).add(subscription.subscription_id)

        self.logger.debug(
            "Subscription created",
            subscription_id=subscription.subscription_id,
            topic=topic
        )
        return subscription

    def remove(self, subscription_id: str) -> bool:
        """Remove a subscription by id."""
        subscription = self.subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False

        topic_ids = self.topic_subscriptions.get(subscription.topic)
        if topic_ids is not None:
            topic_ids.discard(subscription_id)
            if not topic_ids:
                del self.topic_subscriptions[subscription.topic]

        self.logger.debug(
            "Subscription removed",
            subscription_id=subscription_id,
            topic=subscription.topic
        )
        return True

    def publish(self, topics: List[str], event: CacheEvent) -> int:
        """Deliver ``event`` once to every listener of any of ``topics``.

        A failing listener is logged and does not stop delivery to the rest.
        Returns the number of listeners notified.
        """
        delivered: Set[str] = set()
        for topic in topics:
            for subscription_id in list(self.topic_subscriptions.get(topic, ())):
                if subscription_id in delivered:
                    continue
                subscription = self.subscriptions.get(subscription_id)
                if subscription is None:
                    continue
                delivered.add(subscription_id)
                try:
                    subscription.listener(event)
                except Exception as exc:
                    self.logger.error(
                        "Subscriber failed to handle cache event",
                        subscription_id=subscription_id,
                        topic=topic,
                        event_type=event.type.value,
                        error=str(exc)
                    )
        return len(delivered)

    def topic_count(self, topic: str) -> int:
        return len(self.topic_subscriptions.get(topic, ()))

    def clear(self) -> None:
        """Drop every subscription without running close hooks."""
        for subscription in self.subscriptions.values():
            subscription.active = False
        self.subscriptions.clear()
        self.topic_subscriptions.clear()
