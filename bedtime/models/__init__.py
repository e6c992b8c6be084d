"""SQLAlchemy ORM models."""

from bedtime.models.story import Story
from bedtime.models.story_request import (
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    RequestStatus,
    StoryRequest,
    StoryRequestCharacter,
    StoryRequestChild,
)

__all__ = [
    "Story",
    "StoryRequest",
    "StoryRequestChild",
    "StoryRequestCharacter",
    "RequestStatus",
    "TERMINAL_STATUSES",
    "NON_TERMINAL_STATUSES",
]
