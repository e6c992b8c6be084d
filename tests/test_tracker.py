"""Tests for the request tracker."""

import asyncio
import threading
from datetime import timedelta

import pytest

from bedtime.models.story import Story
from bedtime.models.story_request import RequestStatus
from bedtime.services.change_feed import ChangeEvent
from bedtime.services.functions_client import GenerationStartError, GenerationStartTimeout
from bedtime.services.store import RequestStore, StoreError
from bedtime.tracker import CancelError, RequestTracker, TrackerContext, TrackerRegistry
from conftest import OTHER_USER_ID, USER_ID, FakeStarter, run, wait_until


def make_tracker(store, starter, feed=None, **options):
    options.setdefault("auto_start", False)
    options.setdefault("poll_interval", 0)
    return RequestTracker(TrackerContext(user_id=USER_ID), store, starter, feed=feed, **options)


class BrokenReadStore(RequestStore):
    def list_pending(self, *args, **kwargs):
        raise StoreError("connection reset")


class BrokenDeleteStore(RequestStore):
    def delete_request(self, *args, **kwargs):
        raise StoreError("permission denied")


class FlakyClaimStore(RequestStore):
    """The first claim fails as if the connection dropped."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failures = 1

    def claim_for_generation(self, request_id):
        if self.failures:
            self.failures -= 1
            raise StoreError("connection reset")
        return super().claim_for_generation(request_id)


class GatedStore(RequestStore):
    """Pending queries block until the gate opens; counts the queries."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = threading.Event()
        self.queries = 0

    def list_pending(self, *args, **kwargs):
        self.queries += 1
        self.gate.wait(timeout=2.0)
        return super().list_pending(*args, **kwargs)


def test_track_new_request_replaces_existing(store, starter):
    """Tracking the same id twice leaves a single entry."""
    tracker = make_tracker(store, starter)

    tracker.track_new_request("req-1")
    tracker.track_new_request("req-1", {"is_episode": True, "episode_number": 2})

    view = tracker.view
    assert len(view) == 1
    assert view[0].status is RequestStatus.QUEUED
    assert view[0].placeholder
    assert view[0].is_episode
    assert view[0].episode_number == 2


def test_reconcile_drops_requests_outside_window(store, starter, add_request):
    """Requests older than the visibility window are not shown."""
    fresh = add_request("processing", age=timedelta(minutes=2))
    add_request("queued", age=timedelta(minutes=11))

    tracker = make_tracker(store, starter)
    view = run(tracker.reconcile_from_remote())

    assert [r.id for r in view] == [fresh]


def test_reconcile_excludes_terminal_and_unknown_status(store, starter, add_request):
    """Only recognized non-terminal statuses make it into the view."""
    add_request("finished")
    add_request("failed")
    add_request("pending")
    active = add_request("rendering_clips")

    tracker = make_tracker(store, starter)
    view = run(tracker.reconcile_from_remote())

    assert [r.id for r in view] == [active]


def test_reconcile_orders_newest_first_and_supersedes_placeholder(store, starter, add_request):
    """Remote rows replace local placeholders; newest comes first."""
    older = add_request("generating_text", age=timedelta(minutes=5))
    newer = add_request("queued", age=timedelta(minutes=1))

    tracker = make_tracker(store, starter)
    tracker.track_new_request(newer)
    tracker.track_new_request("never-confirmed")

    view = run(tracker.reconcile_from_remote())

    assert [r.id for r in view] == [newer, older]
    assert not any(r.placeholder for r in view)


def test_reconcile_with_given_rows_applies_filters(store, starter):
    """Rows handed in directly are filtered like queried ones."""
    tracker = make_tracker(store, starter)
    now = tracker.clock()

    rows = [
        {"id": "a", "user_id": USER_ID, "status": "queued", "created_at": now},
        {"id": "b", "user_id": OTHER_USER_ID, "status": "queued", "created_at": now},
        {"id": "c", "user_id": USER_ID, "status": "queued", "created_at": now - timedelta(minutes=30)},
        {"id": "d", "user_id": USER_ID, "status": "finished", "created_at": now},
    ]
    view = run(tracker.reconcile_from_remote(rows))

    assert [r.id for r in view] == ["a"]


def test_reconcile_failure_keeps_current_view(session_factory, starter):
    """A failed query leaves the stale view in place."""
    tracker = make_tracker(BrokenReadStore(session_factory), starter)
    tracker.track_new_request("req-1")

    view = run(tracker.reconcile_from_remote())

    assert [r.id for r in view] == ["req-1"]


@pytest.mark.parametrize("status", [RequestStatus.FINISHED, RequestStatus.FAILED, RequestStatus.PROCESSING])
def test_maybe_start_requires_queued(store, starter, add_request, status):
    """Start is never invoked for a request that is not queued."""
    request_id = add_request(status.value)
    tracker = make_tracker(store, starter)

    started = run(tracker.maybe_start_generation(request_id))

    assert started is False
    assert starter.calls == []


def test_maybe_start_concurrent_calls_start_once(store, add_request):
    """Two overlapping start attempts for one request invoke start once."""
    request_id = add_request("queued")
    starter = FakeStarter(delay=0.05)
    tracker = make_tracker(store, starter)

    async def scenario():
        return await asyncio.gather(
            tracker.maybe_start_generation(request_id, RequestStatus.QUEUED),
            tracker.maybe_start_generation(request_id, RequestStatus.QUEUED),
        )

    results = run(scenario())

    assert sorted(results) == [False, True]
    assert starter.calls == [request_id]


def test_durable_claim_blocks_second_tracker(store, starter, add_request):
    """A fresh tracker does not restart a request another one claimed."""
    request_id = add_request("queued")
    first = make_tracker(store, starter)
    second = make_tracker(store, starter)

    assert run(first.maybe_start_generation(request_id, RequestStatus.QUEUED)) is True
    assert run(second.maybe_start_generation(request_id, RequestStatus.QUEUED)) is False
    assert starter.calls == [request_id]


def test_failed_claim_allows_later_start(session_factory, starter, add_request, fetch_request):
    """A claim that errored leaves the request startable on the next pass."""
    request_id = add_request("queued")
    tracker = make_tracker(FlakyClaimStore(session_factory), starter)

    assert run(tracker.maybe_start_generation(request_id, RequestStatus.QUEUED)) is False
    assert starter.calls == []

    assert run(tracker.maybe_start_generation(request_id, RequestStatus.QUEUED)) is True
    assert starter.calls == [request_id]
    assert fetch_request(request_id).status == "processing"


def test_start_timeout_keeps_request_in_flight(store, fetch_request):
    """Create, track, start once, time out: still in flight, no error."""
    starter = FakeStarter(error=GenerationStartTimeout("timed out"))
    tracker = make_tracker(store, starter)

    row = store.create_story_request(USER_ID)
    tracker.track_new_request(row["id"])
    assert [r.id for r in tracker.view] == [row["id"]]

    run(tracker.maybe_start_generation(row["id"]))
    view = run(tracker.reconcile_from_remote())

    assert starter.calls == [row["id"]]
    assert [r.id for r in view] == [row["id"]]
    assert view[0].status in (RequestStatus.QUEUED, RequestStatus.PROCESSING)
    assert view[0].error_message is None

    stored = fetch_request(row["id"])
    assert stored.status != "failed"
    assert stored.error_message is None


def test_start_error_marks_request_failed(store, fetch_request, add_request):
    """A hard start error is written back as failed with its message."""
    request_id = add_request("queued")
    starter = FakeStarter(error=GenerationStartError("Not enough coins"))
    tracker = make_tracker(store, starter)
    tracker.track_new_request(request_id)

    run(tracker.maybe_start_generation(request_id))

    entry = tracker.get(request_id)
    assert entry.status is RequestStatus.FAILED
    assert entry.error_message == "Not enough coins"

    stored = fetch_request(request_id)
    assert stored.status == "failed"
    assert stored.error_message == "Not enough coins"


def test_unexpected_start_error_marks_request_failed(store, fetch_request, add_request):
    request_id = add_request("queued")
    tracker = make_tracker(store, FakeStarter(error=RuntimeError("boom")))

    run(tracker.maybe_start_generation(request_id, RequestStatus.QUEUED))

    stored = fetch_request(request_id)
    assert stored.status == "failed"
    assert stored.error_message == "boom"


def test_auto_start_on_reconcile_fires_once(store, starter, add_request):
    """Queued rows seen during reconciliation are started exactly once."""
    request_id = add_request("queued")
    tracker = make_tracker(store, starter, auto_start=True)

    async def scenario():
        await tracker.reconcile_from_remote()
        await wait_until(lambda: starter.calls)
        await tracker.reconcile_from_remote()
        await tracker.reconcile_from_remote()
        await asyncio.sleep(0.05)

    run(scenario())

    assert starter.calls == [request_id]


def test_push_notification_triggers_reconcile(store, starter, feed):
    """A row change from the feed leads to a refreshed view."""
    tracker = make_tracker(store, starter, feed=feed)

    async def scenario():
        async with tracker:
            row = store.create_story_request(USER_ID)
            # The payload itself is not applied synchronously
            assert tracker.view == []
            await wait_until(lambda: tracker.get(row["id"]) is not None)
            return row

    row = run(scenario())

    assert tracker.get(row["id"]).placeholder is False


def test_push_for_other_user_leaves_view_unchanged(store, starter, feed, add_request):
    """Changes outside the user's filter do not reach the tracker."""
    mine = add_request("generating_images")
    tracker = make_tracker(store, starter, feed=feed)

    async def scenario():
        async with tracker:
            before = await tracker.on_screen_focus()
            add_request("queued", user_id=OTHER_USER_ID)
            delivered = feed.publish(
                ChangeEvent(
                    event="insert",
                    table="story_requests",
                    row={"id": "x", "user_id": OTHER_USER_ID, "status": "queued"},
                )
            )
            after = await tracker.on_screen_focus()
            return before, delivered, after

    before, delivered, after = run(scenario())

    assert delivered == 0
    assert [r.id for r in before] == [mine]
    assert [r.id for r in after] == [mine]


def test_poll_interval_picks_up_unannounced_rows(store, starter, add_request):
    """Rows written without any notification show up on the next poll."""
    request_id = add_request("generating_text")
    tracker = make_tracker(store, starter, poll_interval=0.05)

    async def scenario():
        async with tracker:
            # Starting does not reconcile by itself
            assert tracker.view == []
            await wait_until(lambda: tracker.get(request_id) is not None)

    run(scenario())


def test_queued_triggers_share_one_reconciliation(session_factory, starter, add_request):
    """Triggers arriving during a reconciliation are coalesced into one more."""
    request_id = add_request("processing")
    store = GatedStore(session_factory)
    tracker = make_tracker(store, starter)
    event = ChangeEvent(
        event="update",
        table="story_requests",
        row={"id": request_id, "user_id": USER_ID, "status": "processing"},
    )

    async def scenario():
        async with tracker:
            tracker.on_remote_change_notification(event)
            await wait_until(lambda: store.queries == 1)

            tracker.on_remote_change_notification(event)
            focus = [asyncio.ensure_future(tracker.on_screen_focus()) for _ in range(2)]
            await asyncio.sleep(0.01)
            store.gate.set()
            return await asyncio.wait_for(asyncio.gather(*focus), timeout=2.0)

    views = run(scenario())

    assert store.queries == 2
    assert [[r.id for r in view] for view in views] == [[request_id], [request_id]]


def test_finished_request_leaves_view_and_story_is_found(store, starter, feed, add_request, test_db):
    """generating_text -> finished removes the request; its story is found."""
    request_id = add_request("generating_text")
    tracker = make_tracker(store, starter, feed=feed)

    async def scenario():
        async with tracker:
            assert [r.id for r in await tracker.on_screen_focus()] == [request_id]
            test_db.add(Story(request_id=request_id, user_id=USER_ID, title="Der mutige Igel"))
            test_db.commit()
            store.update_status(request_id, RequestStatus.FINISHED)
            await wait_until(lambda: tracker.get(request_id) is None)

    run(scenario())

    story = tracker.find_story_for_request(request_id)
    assert story["title"] == "Der mutige Igel"


def test_focus_without_running_consumer_reconciles_directly(store, starter, add_request):
    request_id = add_request("processing")
    tracker = make_tracker(store, starter)

    view = run(tracker.on_screen_focus())

    assert [r.id for r in view] == [request_id]


def test_cancel_removes_request(store, starter, add_request):
    """A cancelled request is gone now and after later reconciliations."""
    request_id = add_request("queued")
    tracker = make_tracker(store, starter)
    run(tracker.reconcile_from_remote())

    assert run(tracker.cancel_request(request_id)) is True
    assert tracker.get(request_id) is None

    view = run(tracker.reconcile_from_remote())
    assert request_id not in [r.id for r in view]


def test_cancel_failure_keeps_request(session_factory, starter):
    """When the delete fails the request stays visible."""
    tracker = make_tracker(BrokenDeleteStore(session_factory), starter)
    tracker.track_new_request("req-1")

    with pytest.raises(CancelError):
        run(tracker.cancel_request("req-1"))

    assert tracker.get("req-1") is not None


def test_cancel_other_users_request_is_refused(store, starter, add_request):
    request_id = add_request("queued", user_id=OTHER_USER_ID)
    tracker = make_tracker(store, starter)

    assert run(tracker.cancel_request(request_id)) is False


def test_cancel_of_missing_row_keeps_tracked_entry(store, starter, add_request):
    """Nothing deleted means nothing removed from the view."""
    request_id = add_request("queued", user_id=OTHER_USER_ID)
    tracker = make_tracker(store, starter)
    tracker.track_new_request(request_id)

    assert run(tracker.cancel_request(request_id)) is False
    assert tracker.get(request_id) is not None


def test_close_clears_started_marks(store, starter, feed, add_request):
    request_id = add_request("queued")
    tracker = make_tracker(store, starter, feed=feed)

    async def scenario():
        await tracker.start()
        await tracker.maybe_start_generation(request_id)
        assert request_id in tracker._started
        await tracker.close()

    run(scenario())

    assert not tracker.running
    assert tracker._started == set()
    assert feed.subscriber_count == 0


def test_close_releases_waiting_focus_calls(session_factory, starter, add_request):
    """Focus callers blocked on the consumer get the last view on close."""
    add_request("processing")
    store = GatedStore(session_factory)
    tracker = make_tracker(store, starter)

    async def scenario():
        await tracker.start()
        in_flight = asyncio.ensure_future(tracker.on_screen_focus())
        await wait_until(lambda: store.queries == 1)
        queued = asyncio.ensure_future(tracker.on_screen_focus())
        await asyncio.sleep(0.01)
        try:
            await tracker.close()
            return await asyncio.wait_for(asyncio.gather(in_flight, queued), timeout=1.0)
        finally:
            store.gate.set()

    views = run(scenario())

    assert views == [[], []]
    assert not tracker.running


def test_registry_reuses_tracker_per_user(store, starter, feed):
    registry = TrackerRegistry(store, starter, feed=feed, auto_start=False, poll_interval=0)

    async def scenario():
        first = await registry.get(TrackerContext(user_id=USER_ID))
        second = await registry.get(TrackerContext(user_id=USER_ID, locale="en"))
        other = await registry.get(TrackerContext(user_id=OTHER_USER_ID))
        await registry.close_all()
        return first, second, other

    first, second, other = run(scenario())

    assert first is second
    assert first.context.locale == "en"
    assert other is not first


def test_registry_evicts_idle_trackers(store, starter, feed):
    """A tracker nobody asked for within the idle time is closed and dropped."""
    registry = TrackerRegistry(store, starter, feed=feed, idle_seconds=0.05, auto_start=False, poll_interval=0)

    async def scenario():
        idle = await registry.get(TrackerContext(user_id=USER_ID))
        await asyncio.sleep(0.1)
        active = await registry.get(TrackerContext(user_id=OTHER_USER_ID))
        state = (len(registry), feed.subscriber_count, idle.running, active.running)
        again = await registry.get(TrackerContext(user_id=USER_ID))
        await registry.close_all()
        return idle, again, state

    idle, again, state = run(scenario())

    assert state == (1, 1, False, True)
    assert again is not idle


def test_registry_without_idle_limit_keeps_trackers(store, starter, feed):
    registry = TrackerRegistry(store, starter, feed=feed, idle_seconds=0, auto_start=False, poll_interval=0)

    async def scenario():
        first = await registry.get(TrackerContext(user_id=USER_ID))
        await asyncio.sleep(0.02)
        await registry.get(TrackerContext(user_id=OTHER_USER_ID))
        count = len(registry)
        await registry.close_all()
        return first, count

    first, count = run(scenario())

    assert count == 2
    assert not first.running
