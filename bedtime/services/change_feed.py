"""Row-level change subscriptions for story request updates."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

CHANGE_EVENTS = ("insert", "update", "delete")


@dataclass
class ChangeEvent:
    """A single row change: event is 'insert', 'update' or 'delete'."""

    event: str
    table: str
    row: Dict[str, Any]
    old_row: Optional[Dict[str, Any]] = None

    @classmethod
    def from_webhook(cls, payload: Dict[str, Any]) -> "ChangeEvent":
        """Build an event from a database webhook body.

        Webhook bodies look like
        {"type": "UPDATE", "table": "story_requests", "record": {...}, "old_record": {...}}.
        Deletes carry the row only in old_record.
        """
        event = str(payload.get("type", "")).lower()
        if event not in CHANGE_EVENTS:
            raise ValueError(f"Unknown change type: {payload.get('type')}")

        record = payload.get("record") or {}
        old_record = payload.get("old_record")
        if event == "delete" and not record:
            record = old_record or {}

        return cls(event=event, table=payload.get("table", ""), row=record, old_row=old_record)

    def matches(self, filters: Dict[str, Any]) -> bool:
        """Column-equality filter check against the new (or deleted) row."""
        for column, expected in filters.items():
            value = self.row.get(column)
            if value is None and self.old_row:
                value = self.old_row.get(column)
            if value != expected:
                return False
        return True


@dataclass
class Subscription:
    """Handle returned by ChangeFeed.subscribe."""

    feed: "ChangeFeed"
    table: str
    filters: Dict[str, Any]
    callback: Callable[[ChangeEvent], Any]
    active: bool = field(default=True)

    def unsubscribe(self):
        """Stop delivering events to this subscription."""
        if self.active:
            self.active = False
            self.feed._remove(self)


class ChangeFeed:
    """In-process fan-out of row changes to filtered subscribers.

    Changes come from local store writes and from the realtime webhook.
    Coroutine callbacks are scheduled on the running loop; plain callables
    are invoked inline. Store writes publish from worker threads, so plain
    callables must be safe to call off the loop.
    """

    def __init__(self):
        self._subscriptions: List[Subscription] = []

    def subscribe(
        self,
        table: str,
        callback: Callable[[ChangeEvent], Any],
        filters: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """Register a callback for changes on table matching filters."""
        subscription = Subscription(self, table, dict(filters or {}), callback)
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to {table} changes with filters {subscription.filters}")
        return subscription

    def _remove(self, subscription: Subscription):
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, change: ChangeEvent) -> int:
        """Deliver a change to matching subscribers. Returns the delivery count."""
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.table != change.table or not subscription.active:
                continue
            if not change.matches(subscription.filters):
                continue

            try:
                result = subscription.callback(change)
                if asyncio.iscoroutine(result):
                    asyncio.get_running_loop().create_task(result)
                delivered += 1
            except Exception as e:
                logger.error(f"Error in change listener for {change.table}: {e}", exc_info=True)

        return delivered
