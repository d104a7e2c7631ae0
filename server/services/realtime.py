"""Table change feeds for admin dashboards.

Database publishes ``{"eventType", "table", "new", "old"}`` on
``changes:{table}`` after each committed mutation; these helpers parse the
payload and hand it to a callback.
"""

import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from core.logging import get_logger
from core.pubsub import PubSubService, Subscription, SubscriptionGroup, changes_channel, parse_payload

logger = get_logger(__name__)

ChangeCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
ToastCallback = Callable[[Dict[str, str]], Union[None, Awaitable[None]]]

FEEDS = frozenset([
    "system_alerts",
    "security_alerts",
    "broadcasts",
    "projects",
    "users",
    "deliverables",
    "system_settings",
])


def toast_for(table: str, change: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """Toast content for a change worth interrupting an admin for, else None."""
    new = change.get("new")
    if change.get("eventType") != "INSERT" or not new:
        return None

    if table == "system_alerts":
        if new.get("is_active") and new.get("target_audience") != "clients":
            return {
                "title": f"New {new.get('type')} Alert",
                "description": new.get("title", ""),
                "variant": "destructive" if new.get("priority") in ("critical", "high") else "default",
            }
    elif table == "security_alerts":
        if new.get("severity") in ("high", "critical"):
            return {
                "title": f"Security Alert: {new.get('title')}",
                "description": new.get("description", ""),
                "variant": "destructive",
            }
    return None


def is_toast_worthy(table: str, change: Dict[str, Any]) -> bool:
    return toast_for(table, change) is not None


class RealtimeService:
    """Subscribe callbacks to per-table change events."""

    def __init__(self, pubsub: PubSubService, on_toast: Optional[ToastCallback] = None):
        self.pubsub = pubsub
        self.on_toast = on_toast

    def on_table(self, table: str, callback: ChangeCallback) -> Subscription:
        channel = changes_channel(table)

        async def deliver(raw: str):
            change = parse_payload(raw, channel)
            if change is None:
                return
            logger.debug("Change received", table=table, event_type=change.get("eventType"))
            toast = toast_for(table, change)
            if toast is not None and self.on_toast is not None:
                result = self.on_toast(toast)
                if inspect.isawaitable(result):
                    await result
            result = callback(change)
            if inspect.isawaitable(result):
                await result

        return self.pubsub.subscribe(channel, deliver)

    def on_system_alert(self, callback: ChangeCallback) -> Subscription:
        return self.on_table("system_alerts", callback)

    def on_security_alert(self, callback: ChangeCallback) -> Subscription:
        return self.on_table("security_alerts", callback)

    def on_broadcast(self, callback: ChangeCallback) -> Subscription:
        return self.on_table("broadcasts", callback)

    def on_project(self, callback: ChangeCallback) -> Subscription:
        return self.on_table("projects", callback)

    def on_user(self, callback: ChangeCallback) -> Subscription:
        return self.on_table("users", callback)

    def on_deliverable(self, callback: ChangeCallback) -> Subscription:
        return self.on_table("deliverables", callback)

    def on_system_settings(self, callback: ChangeCallback) -> Subscription:
        return self.on_table("system_settings", callback)

    def subscribe_admin(self, **callbacks: Optional[ChangeCallback]) -> SubscriptionGroup:
        """Mount several feeds at once, e.g. ``subscribe_admin(system_alerts=cb, projects=cb2)``."""
        subscriptions = []
        for table, callback in callbacks.items():
            if callback is None:
                continue
            if table not in FEEDS:
                raise ValueError(f"Unknown change feed: {table}")
            subscriptions.append(self.on_table(table, callback))
        return SubscriptionGroup(subscriptions)
