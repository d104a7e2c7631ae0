"""In-process publish/subscribe channel registry.

Delivery is synchronous with respect to the publisher: every subscriber
registered when ``publish`` is called receives the payload, in registration
order, before ``publish`` returns. Nothing is queued for late subscribers.
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import orjson

from core.logging import get_logger

logger = get_logger(__name__)

Callback = Callable[[str], Union[None, Awaitable[None]]]

NOTIFICATION_PREFIX = "notification:"
MESSAGE_PREFIX = "message:"
CHANGES_PREFIX = "changes:"


class _Registration:
    """One subscribe() call. Identity matters, not the callback."""

    __slots__ = ("channel", "callback")

    def __init__(self, channel: str, callback: Callback):
        self.channel = channel
        self.callback = callback


class Subscription:
    """Handle returned by subscribe(); unsubscribe() removes only this registration."""

    def __init__(self, registry: "PubSubService", registration: _Registration):
        self._registry = registry
        self._registration: Optional[_Registration] = registration

    @property
    def channel(self) -> str:
        return self._registration.channel if self._registration else ""

    @property
    def active(self) -> bool:
        return self._registration is not None

    def unsubscribe(self) -> None:
        if self._registration is None:
            return
        self._registry._remove(self._registration)
        self._registration = None


class SubscriptionGroup:
    """Several subscriptions torn down together."""

    def __init__(self, subscriptions: List[Subscription]):
        self.subscriptions = subscriptions

    def unsubscribe(self) -> None:
        for subscription in self.subscriptions:
            subscription.unsubscribe()


class PubSubService:
    """Topic-based publish/subscribe with per-callback failure isolation."""

    def __init__(self):
        self._channels: Dict[str, List[_Registration]] = {}

    def subscribe(self, channel: str, callback: Callback) -> Subscription:
        """Register callback on channel."""
        registration = _Registration(channel, callback)
        self._channels.setdefault(channel, []).append(registration)
        logger.debug("Subscribed", channel=channel, subscribers=len(self._channels[channel]))
        return Subscription(self, registration)

    def _remove(self, registration: _Registration) -> None:
        registrations = self._channels.get(registration.channel)
        if not registrations:
            return
        # Rebuild instead of mutating so in-flight publishes keep their snapshot.
        remaining = [r for r in registrations if r is not registration]
        if remaining:
            self._channels[registration.channel] = remaining
        else:
            del self._channels[registration.channel]
        logger.debug("Unsubscribed", channel=registration.channel, subscribers=len(remaining))

    async def publish(self, channel: str, message: str) -> bool:
        """Deliver message to every current subscriber of channel.

        A failing subscriber is logged and skipped; the publisher never sees
        its exception.
        """
        try:
            snapshot = list(self._channels.get(channel, ()))
        except Exception as e:
            logger.error("Publish failed", channel=channel, error=str(e))
            return False

        for registration in snapshot:
            try:
                result = registration.callback(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Subscriber callback error", channel=channel, error=str(e))

        logger.debug("Published", channel=channel, delivered=len(snapshot))
        return True

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    def channels(self) -> List[str]:
        return list(self._channels.keys())

    def clear(self) -> None:
        self._channels.clear()


def notification_channel(user_id: Any) -> str:
    return f"{NOTIFICATION_PREFIX}{user_id}"


def message_channel(room_id: str) -> str:
    return f"{MESSAGE_PREFIX}{room_id}"


def changes_channel(table: str) -> str:
    return f"{CHANGES_PREFIX}{table}"


def parse_payload(message: str, channel: str) -> Optional[Dict[str, Any]]:
    """Decode a JSON object payload; anything else is logged and dropped."""
    try:
        payload = orjson.loads(message)
    except orjson.JSONDecodeError as e:
        logger.warning("Dropping malformed payload", channel=channel, error=str(e))
        return None
    if not isinstance(payload, dict):
        logger.warning("Dropping non-object payload", channel=channel)
        return None
    return payload
