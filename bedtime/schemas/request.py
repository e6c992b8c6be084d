"""Story request Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class StoryRequestCreate(BaseModel):
    """Wizard selections for a single story."""

    child_ids: List[str] = Field(default_factory=list)
    category_id: Optional[str] = None
    category_character_ids: List[str] = Field(default_factory=list)
    side_character_ids: List[str] = Field(default_factory=list)
    location: Optional[str] = None
    moral_id: Optional[str] = None
    length: Literal["short", "normal", "long"] = "normal"
    generate_images: bool = True


class SeriesCategory(BaseModel):
    id: str
    name: str
    slug: Optional[str] = None


class SeriesCreate(BaseModel):
    """Wizard selections for a story series."""

    title: Optional[str] = None
    child_ids: List[str] = Field(default_factory=list)
    category: Optional[SeriesCategory] = None
    location_text: Optional[str] = None
    chosen_character_ids: List[str] = Field(default_factory=list)
    chosen_category_character_ids: List[str] = Field(default_factory=list)
    mode: Literal["fixed", "open"] = "fixed"
    planned_episodes: Optional[int] = None
    default_moral_key: Optional[str] = None
    default_length: Literal["short", "normal", "long"] = "normal"


class SeriesCreated(BaseModel):
    """Response after a series was created server-side."""

    series_id: str
    request_id: Optional[str] = None
    episode_number: Optional[int] = None


class TrackedRequestResponse(BaseModel):
    """One entry of the pending-requests banner."""

    id: str
    status: str
    created_at: datetime
    error_message: Optional[str] = None
    is_episode: bool = False
    episode_number: Optional[int] = None
    placeholder: bool = False
    label: str
    icon: str
    progress: float


class PendingRequestsResponse(BaseModel):
    requests: List[TrackedRequestResponse]


class RequestDetail(BaseModel):
    """Generating screen state for one request."""

    id: str
    status: str
    created_at: Optional[datetime] = None
    error_message: Optional[str] = None
    is_episode: bool = False
    episode_number: Optional[int] = None
    label: Optional[str] = None
    icon: Optional[str] = None
    progress: Optional[float] = None
    is_finished: bool = False
    is_failed: bool = False


class StoryLink(BaseModel):
    story_id: str
    request_id: str
    title: Optional[str] = None
    series_id: Optional[str] = None


class ChangeWebhook(BaseModel):
    """Database webhook body for a row change."""

    type: str
    table: str
    schema_name: Optional[str] = Field(default=None, alias="schema")
    record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None
