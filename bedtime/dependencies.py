"""FastAPI dependencies shared by the routers."""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from bedtime.config import settings
from bedtime.tracker import RequestTracker, TrackerContext, TrackerRegistry


def get_registry(request: Request) -> TrackerRegistry:
    return request.app.state.registry


def get_store(request: Request):
    return request.app.state.store


def get_functions(request: Request):
    return request.app.state.functions


def get_feed(request: Request):
    return request.app.state.feed


def get_context(
    x_user_id: Optional[str] = Header(default=None),
    accept_language: Optional[str] = Header(default=None),
) -> TrackerContext:
    """Current user and locale from request headers."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")

    locale = settings.DEFAULT_LOCALE
    if accept_language:
        locale = accept_language.split(",")[0].split(";")[0].strip() or locale

    return TrackerContext(user_id=x_user_id, locale=locale)


async def get_tracker(
    context: TrackerContext = Depends(get_context),
    registry: TrackerRegistry = Depends(get_registry),
) -> RequestTracker:
    return await registry.get(context)
