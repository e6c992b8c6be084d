"""Story request routes."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool

from bedtime.dependencies import get_context, get_functions, get_store, get_tracker
from bedtime.models.story_request import RequestStatus
from bedtime.schemas.request import (
    PendingRequestsResponse,
    RequestDetail,
    SeriesCreate,
    SeriesCreated,
    StoryLink,
    StoryRequestCreate,
    TrackedRequestResponse,
)
from bedtime.services.functions_client import GenerationStartError
from bedtime.services.progress import describe_status
from bedtime.services.store import StoreError
from bedtime.tracker import CancelError, RequestTracker, TrackerContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/requests", tags=["requests"])


def _detail(row: Dict[str, Any], locale: str) -> RequestDetail:
    """Generating screen payload for a store row."""
    status = RequestStatus.parse(row["status"])
    display: Dict[str, Optional[Any]] = {}
    if status is not None:
        display = describe_status(status, locale)

    return RequestDetail(
        id=row["id"],
        status=row["status"],
        created_at=row.get("created_at"),
        error_message=row.get("error_message"),
        is_episode=bool(row.get("is_episode")),
        episode_number=row.get("episode_number"),
        label=display.get("label"),
        icon=display.get("icon"),
        progress=display.get("progress"),
        is_finished=status is RequestStatus.FINISHED,
        is_failed=status is RequestStatus.FAILED,
    )


@router.post("", response_model=RequestDetail, status_code=201)
async def create_story_request(
    data: StoryRequestCreate,
    context: TrackerContext = Depends(get_context),
    tracker: RequestTracker = Depends(get_tracker),
    store=Depends(get_store),
):
    """Create a single-story request and start tracking it."""
    try:
        row = await run_in_threadpool(
            store.create_story_request,
            context.user_id,
            child_ids=data.child_ids,
            category_character_ids=data.category_character_ids,
            side_character_ids=data.side_character_ids,
            category_id=data.category_id,
            location=data.location or None,
            moral_id=data.moral_id,
            length=data.length,
            generate_images=data.generate_images,
            notify_on_complete=True,
        )
    except StoreError as e:
        logger.error(f"Error creating story request: {e}")
        raise HTTPException(status_code=502, detail="Story request could not be created")

    tracker.track_new_request(row["id"], {"created_at": row["created_at"]})
    if tracker.auto_start:
        tracker.schedule_start(row["id"], RequestStatus.QUEUED)

    return _detail(row, context.locale)


@router.post("/series", response_model=SeriesCreated, status_code=201)
async def create_series(
    data: SeriesCreate,
    tracker: RequestTracker = Depends(get_tracker),
    functions=Depends(get_functions),
):
    """Create a series; the server queues its first episode request."""
    try:
        result = await functions.create_series(data.model_dump())
    except GenerationStartError as e:
        logger.error(f"Error creating series: {e}")
        raise HTTPException(status_code=502, detail="Series could not be created")

    series_id = str(result["series"]["id"])
    episode = result.get("request") or {}
    request_id = episode.get("id")
    if request_id:
        tracker.track_new_request(
            request_id,
            {"is_episode": True, "episode_number": episode.get("episode_number", 1)},
        )

    logger.info(f"Created series {series_id}")

    return SeriesCreated(
        series_id=series_id,
        request_id=request_id,
        episode_number=episode.get("episode_number") if request_id else None,
    )


@router.get("/pending", response_model=PendingRequestsResponse)
async def list_pending_requests(
    context: TrackerContext = Depends(get_context),
    tracker: RequestTracker = Depends(get_tracker),
):
    """Pending requests banner; refreshes on every call (screen focus)."""
    view = await tracker.on_screen_focus()
    return PendingRequestsResponse(
        requests=[
            TrackedRequestResponse(
                id=entry.id,
                status=entry.status.value,
                created_at=entry.created_at,
                error_message=entry.error_message,
                is_episode=entry.is_episode,
                episode_number=entry.episode_number,
                placeholder=entry.placeholder,
                **describe_status(entry.status, context.locale),
            )
            for entry in view
        ]
    )


@router.get("/{request_id}", response_model=RequestDetail)
async def get_request(
    request_id: str,
    context: TrackerContext = Depends(get_context),
    tracker: RequestTracker = Depends(get_tracker),
):
    """Generating screen state; starts generation for a queued request."""
    try:
        row = await tracker.load_request(request_id)
    except StoreError as e:
        logger.error(f"Error loading request {request_id}: {e}")
        raise HTTPException(status_code=502, detail="Request could not be loaded")

    if not row:
        raise HTTPException(status_code=404, detail="Request not found")

    return _detail(row, context.locale)


@router.get("/{request_id}/story", response_model=StoryLink)
def get_request_story(
    request_id: str,
    tracker: RequestTracker = Depends(get_tracker),
):
    """Story created from a finished request."""
    try:
        story = tracker.find_story_for_request(request_id)
    except StoreError as e:
        logger.error(f"Error finding story for request {request_id}: {e}")
        raise HTTPException(status_code=502, detail="Story could not be loaded")

    if not story:
        raise HTTPException(status_code=404, detail="Story not ready")

    return StoryLink(
        story_id=story["id"],
        request_id=request_id,
        title=story.get("title"),
        series_id=story.get("series_id"),
    )


@router.delete("/{request_id}")
async def cancel_request(
    request_id: str,
    tracker: RequestTracker = Depends(get_tracker),
):
    """Cancel a request. Spent coins are not refunded."""
    try:
        deleted = await tracker.cancel_request(request_id)
    except CancelError:
        raise HTTPException(status_code=502, detail="Request could not be cancelled")

    if not deleted:
        raise HTTPException(status_code=404, detail="Request not found")

    return {"message": "Request cancelled"}
