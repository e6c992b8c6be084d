"""Tracking of a user's in-flight story generation requests."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from bedtime.config import settings
from bedtime.models.story_request import NON_TERMINAL_STATUSES, RequestStatus, utcnow
from bedtime.services.change_feed import ChangeEvent, ChangeFeed, Subscription
from bedtime.services.functions_client import GenerationStartTimeout
from bedtime.services.store import TABLE, StoreError

logger = logging.getLogger(__name__)


class CancelError(Exception):
    """Deleting a request failed; the request is still there."""


@dataclass
class TrackerContext:
    """Who the tracker works for. Passed in, never read from globals."""

    user_id: str
    locale: str = "de"


@dataclass
class TrackedRequest:
    """Client-side projection of one in-flight request."""

    id: str
    status: RequestStatus
    created_at: datetime
    error_message: Optional[str] = None
    is_episode: bool = False
    episode_number: Optional[int] = None
    placeholder: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["TrackedRequest"]:
        """Build from a store row; None when the status is not recognized."""
        status = RequestStatus.parse(row.get("status"))
        created_at = _as_naive_utc(row.get("created_at"))
        if status is None or created_at is None:
            return None
        return cls(
            id=str(row["id"]),
            status=status,
            created_at=created_at,
            error_message=row.get("error_message"),
            is_episode=bool(row.get("is_episode")),
            episode_number=row.get("episode_number"),
        )


def _as_naive_utc(value) -> Optional[datetime]:
    """Timestamps arrive as datetimes from the store and ISO strings from webhooks."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass
class _Trigger:
    reason: str
    waiter: Optional[asyncio.Future] = field(default=None)


class RequestTracker:
    """Keeps the tracked view of one user's pending requests.

    Push notifications, focus events and the poll timer all feed one queue.
    A single consumer task drains it and runs one full-replace
    reconciliation at a time, so overlapping queries never race on the view.

    Start-generation is invoked at most once per request per tracker: the id
    goes into the started set before the call is made, and the row is
    claimed in the store so other clients skip it too.

    Store calls are blocking and run in worker threads. Change events
    published from those threads are handed back to the tracker's loop.
    """

    def __init__(
        self,
        context: TrackerContext,
        store,
        starter,
        feed: Optional[ChangeFeed] = None,
        window: Optional[timedelta] = None,
        poll_interval: Optional[float] = None,
        auto_start: Optional[bool] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.context = context
        self.store = store
        self.starter = starter
        self.feed = feed
        self.window = window or timedelta(seconds=settings.VISIBILITY_WINDOW_SECONDS)
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.RECONCILE_POLL_INTERVAL
        )
        self.auto_start = settings.AUTO_START_GENERATION if auto_start is None else auto_start
        self.clock = clock

        self._view: Dict[str, TrackedRequest] = {}
        self._started: Set[str] = set()
        self._start_tasks: Set[asyncio.Task] = set()
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._consumer: Optional[asyncio.Task] = None
        self._batch: List[_Trigger] = []
        self._subscription: Optional[Subscription] = None

    # ------------------------------------------------------------------
    # Lifecycle

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def start(self):
        """Subscribe to changes and start the reconciliation consumer."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._consumer = self._loop.create_task(self._consume())
        if self.feed is not None:
            self._subscription = self.feed.subscribe(
                TABLE,
                self.on_remote_change_notification,
                filters={"user_id": self.context.user_id},
            )
        logger.info(f"Tracker started for user {self.context.user_id}")

    async def close(self):
        """Tear down the subscription, consumer and in-flight start calls."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

        tasks = [t for t in self._start_tasks if not t.done()]
        if self._consumer is not None:
            tasks.append(self._consumer)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        # Focus callers still waiting get the last known view
        pending = list(self._batch)
        while self._queue is not None and not self._queue.empty():
            pending.append(self._queue.get_nowait())
        view = self.view
        for item in pending:
            if item.waiter is not None and not item.waiter.done():
                item.waiter.set_result(view)

        self._batch = []
        self._consumer = None
        self._queue = None
        self._loop = None
        self._start_tasks.clear()
        self._started.clear()
        logger.info(f"Tracker closed for user {self.context.user_id}")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ------------------------------------------------------------------
    # View

    @property
    def view(self) -> List[TrackedRequest]:
        """Tracked requests, newest first."""
        return sorted(self._view.values(), key=lambda r: r.created_at, reverse=True)

    def get(self, request_id: str) -> Optional[TrackedRequest]:
        return self._view.get(request_id)

    def track_new_request(self, request_id: str, metadata: Optional[Dict[str, Any]] = None) -> TrackedRequest:
        """Show a queued placeholder right away, before the store confirms it."""
        metadata = metadata or {}
        entry = TrackedRequest(
            id=request_id,
            status=RequestStatus.QUEUED,
            created_at=_as_naive_utc(metadata.get("created_at")) or self.clock(),
            is_episode=bool(metadata.get("is_episode")),
            episode_number=metadata.get("episode_number"),
            placeholder=True,
        )
        self._view[request_id] = entry
        logger.debug(f"Tracking new request {request_id}")
        return entry

    async def reconcile_from_remote(self, rows: Optional[Iterable[Dict[str, Any]]] = None) -> List[TrackedRequest]:
        """Replace the view with the authoritative pending requests.

        When rows is None the store is queried. A failed query leaves the
        current view as it was.
        """
        now = self.clock()
        if rows is None:
            try:
                rows = await asyncio.to_thread(self.store.list_pending, self.context.user_id, self.window, now=now)
            except StoreError as e:
                logger.warning(f"Reconciliation failed, keeping current view: {e}")
                return self.view

        cutoff = now - self.window
        view: Dict[str, TrackedRequest] = {}
        for row in rows:
            owner = row.get("user_id")
            if owner is not None and owner != self.context.user_id:
                continue
            entry = TrackedRequest.from_row(row)
            if entry is None:
                logger.debug(f"Ignoring request {row.get('id')} with status {row.get('status')!r}")
                continue
            if entry.status not in NON_TERMINAL_STATUSES or entry.created_at < cutoff:
                continue
            current = view.get(entry.id)
            if current is None or entry.created_at >= current.created_at:
                view[entry.id] = entry

        self._view = view

        if self.auto_start:
            for entry in view.values():
                if entry.status is RequestStatus.QUEUED and entry.id not in self._started:
                    self.schedule_start(entry.id, entry.status)

        return self.view

    # ------------------------------------------------------------------
    # Triggers

    def on_remote_change_notification(self, event: ChangeEvent):
        """Schedule a reconciliation; the payload itself is not applied."""
        logger.debug(f"Change on {event.table}: {event.event} {event.row.get('id')}")
        self._enqueue(_Trigger("push"))

    async def on_screen_focus(self) -> List[TrackedRequest]:
        """Reconcile unconditionally and return the resulting view."""
        if not self.running:
            return await self.reconcile_from_remote()
        waiter = asyncio.get_running_loop().create_future()
        self._enqueue(_Trigger("focus", waiter))
        return await waiter

    def _enqueue(self, trigger: _Trigger):
        queue, loop = self._queue, self._loop
        if queue is None or loop is None:
            logger.debug(f"Tracker not running, dropping {trigger.reason} trigger")
            return
        try:
            on_loop = asyncio.get_running_loop() is loop
        except RuntimeError:
            on_loop = False
        if on_loop:
            queue.put_nowait(trigger)
            return
        try:
            loop.call_soon_threadsafe(queue.put_nowait, trigger)
        except RuntimeError:
            logger.debug(f"Tracker loop closed, dropping {trigger.reason} trigger")

    async def _consume(self):
        timeout = self.poll_interval if self.poll_interval and self.poll_interval > 0 else None
        while True:
            try:
                trigger = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                trigger = _Trigger("poll")

            # Coalesce everything queued so far into one reconciliation
            self._batch = [trigger]
            while not self._queue.empty():
                self._batch.append(self._queue.get_nowait())

            try:
                view = await self.reconcile_from_remote()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Unexpected reconciliation error: {e}", exc_info=True)
                view = self.view

            for item in self._batch:
                if item.waiter is not None and not item.waiter.done():
                    item.waiter.set_result(view)
            self._batch = []

    # ------------------------------------------------------------------
    # Generation start

    def schedule_start(self, request_id: str, status: Optional[RequestStatus] = None) -> asyncio.Task:
        """Run maybe_start_generation in the background."""
        task = asyncio.get_running_loop().create_task(self.maybe_start_generation(request_id, status))
        self._start_tasks.add(task)
        task.add_done_callback(self._start_tasks.discard)
        return task

    async def maybe_start_generation(self, request_id: str, status: Optional[RequestStatus] = None) -> bool:
        """Invoke start-generation for a queued request, at most once.

        Returns True when this call invoked the start operation.
        """
        if status is None:
            entry = self._view.get(request_id)
            if entry is not None:
                status = entry.status
            else:
                try:
                    row = await asyncio.to_thread(self.store.get_request, request_id, user_id=self.context.user_id)
                except StoreError as e:
                    logger.error(f"Could not load request {request_id} before start: {e}")
                    return False
                status = RequestStatus.parse(row["status"]) if row else None

        if status is not RequestStatus.QUEUED:
            return False
        if request_id in self._started:
            return False

        # Mark before invoking so a concurrent pass cannot start it again
        self._started.add(request_id)

        try:
            claimed = await asyncio.to_thread(self.store.claim_for_generation, request_id)
        except StoreError as e:
            # Nothing was claimed, so a later observation may try again
            logger.error(f"Could not claim request {request_id}: {e}")
            self._started.discard(request_id)
            return False
        if not claimed:
            logger.info(f"Request {request_id} already claimed, not starting again")
            return False

        entry = self._view.get(request_id)
        if entry is not None:
            entry.status = RequestStatus.PROCESSING

        logger.info(f"Starting generation for request {request_id}")
        try:
            await self.starter.start_story(request_id)
        except GenerationStartTimeout:
            logger.info(f"Start for request {request_id} timed out, function continues in background")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Starting generation for request {request_id} failed: {e}")
            await self._mark_failed(request_id, str(e) or "Unknown error")
        return True

    async def _mark_failed(self, request_id: str, message: str):
        entry = self._view.get(request_id)
        if entry is not None:
            entry.status = RequestStatus.FAILED
            entry.error_message = message
        try:
            await asyncio.to_thread(self.store.update_status, request_id, RequestStatus.FAILED, error_message=message)
        except StoreError as e:
            logger.error(f"Could not record failure for request {request_id}: {e}")

    # ------------------------------------------------------------------
    # Screen operations

    async def load_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        """Load one request for the generating screen, starting it if queued.

        Raises StoreError when the read fails.
        """
        row = await asyncio.to_thread(self.store.get_request, request_id, user_id=self.context.user_id)
        if row is None:
            return None
        status = RequestStatus.parse(row["status"])
        if self.auto_start and status is RequestStatus.QUEUED and request_id not in self._started:
            self.schedule_start(request_id, status)
        return row

    def find_story_for_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        """Story created from a finished request, or None. Blocking."""
        return self.store.find_story_for_request(request_id)

    async def cancel_request(self, request_id: str) -> bool:
        """Delete a request. Coins already spent are not refunded.

        The view is only changed once a row was actually deleted.
        """
        try:
            deleted = await asyncio.to_thread(self.store.delete_request, request_id, user_id=self.context.user_id)
        except StoreError as e:
            logger.error(f"Cancel of request {request_id} failed: {e}")
            raise CancelError(str(e)) from e

        if not deleted:
            logger.info(f"Request {request_id} not found for user {self.context.user_id}, nothing cancelled")
            return False

        self._view.pop(request_id, None)
        logger.info(f"Cancelled request {request_id}")
        return True


class TrackerRegistry:
    """One running tracker per active user.

    Trackers not asked for within idle_seconds are closed and dropped the
    next time the registry is used. 0 disables eviction.
    """

    def __init__(
        self,
        store,
        starter,
        feed: Optional[ChangeFeed] = None,
        idle_seconds: Optional[float] = None,
        **tracker_options,
    ):
        self.store = store
        self.starter = starter
        self.feed = feed
        self.idle_seconds = settings.TRACKER_IDLE_SECONDS if idle_seconds is None else idle_seconds
        self.tracker_options = tracker_options
        self._trackers: Dict[str, RequestTracker] = {}
        self._last_used: Dict[str, float] = {}

    def __len__(self):
        return len(self._trackers)

    async def get(self, context: TrackerContext) -> RequestTracker:
        """Return the user's tracker, starting one on first use."""
        await self.evict_idle(keep=context.user_id)
        self._last_used[context.user_id] = time.monotonic()

        tracker = self._trackers.get(context.user_id)
        if tracker is None:
            tracker = RequestTracker(context, self.store, self.starter, feed=self.feed, **self.tracker_options)
            self._trackers[context.user_id] = tracker
        else:
            tracker.context.locale = context.locale
        if not tracker.running:
            await tracker.start()
        return tracker

    async def evict_idle(self, keep: Optional[str] = None) -> List[str]:
        """Close trackers idle for longer than idle_seconds; return their users."""
        if not self.idle_seconds or self.idle_seconds <= 0:
            return []
        cutoff = time.monotonic() - self.idle_seconds
        idle = [
            user_id
            for user_id, last_used in self._last_used.items()
            if user_id != keep and last_used < cutoff
        ]
        for user_id in idle:
            self._last_used.pop(user_id, None)
            tracker = self._trackers.pop(user_id, None)
            if tracker is not None:
                await tracker.close()
                logger.info(f"Evicted idle tracker for user {user_id}")
        return idle

    async def close_all(self):
        for tracker in list(self._trackers.values()):
            await tracker.close()
        self._trackers.clear()
        self._last_used.clear()
