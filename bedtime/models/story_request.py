"""Story request model and status set."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Text

from bedtime.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RequestStatus(str, Enum):
    """Closed set of statuses a story request can be in."""

    QUEUED = "queued"
    PROCESSING = "processing"
    GENERATING_TEXT = "generating_text"
    GENERATING_IMAGES = "generating_images"
    RENDERING_CLIPS = "rendering_clips"
    FINISHED = "finished"
    FAILED = "failed"

    @classmethod
    def parse(cls, value):
        """Return the status for value, or None when it is not recognized."""
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RequestStatus.FINISHED, RequestStatus.FAILED})
NON_TERMINAL_STATUSES = frozenset(set(RequestStatus) - TERMINAL_STATUSES)

# Pipeline order, used for progress display
STATUS_SEQUENCE = [
    RequestStatus.QUEUED,
    RequestStatus.PROCESSING,
    RequestStatus.GENERATING_TEXT,
    RequestStatus.GENERATING_IMAGES,
    RequestStatus.RENDERING_CLIPS,
    RequestStatus.FINISHED,
]


class StoryRequest(Base):
    """One requested story or series episode, advanced by the server pipeline."""

    __tablename__ = "story_requests"

    id = Column(Text, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default=RequestStatus.QUEUED.value)
    error_message = Column(Text)
    is_episode = Column(Boolean, default=False)
    episode_number = Column(Integer)

    # Wizard selections
    category_id = Column(Text)
    location = Column(Text)
    moral_id = Column(Text)
    length = Column(Text, default="normal")  # 'short', 'normal', 'long'
    generate_images = Column(Boolean, default=True)
    notify_on_complete = Column(Boolean, default=True)

    # Set once when a client claims the request for generation
    generation_started_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_story_requests_user_status", "user_id", "status"),
        Index("idx_story_requests_created_at", "created_at"),
    )

    def to_dict(self):
        """Row payload as delivered to change feed subscribers."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status,
            "error_message": self.error_message,
            "is_episode": bool(self.is_episode),
            "episode_number": self.episode_number,
            "created_at": self.created_at,
            "generation_started_at": self.generation_started_at,
        }


class StoryRequestChild(Base):
    """Child selected for a story request."""

    __tablename__ = "story_request_children"

    story_request_id = Column(
        Text, ForeignKey("story_requests.id", ondelete="CASCADE"), primary_key=True
    )
    child_id = Column(Text, primary_key=True)


class StoryRequestCharacter(Base):
    """Category or side character selected for a story request."""

    __tablename__ = "story_request_characters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    story_request_id = Column(
        Text, ForeignKey("story_requests.id", ondelete="CASCADE"), nullable=False
    )
    category_character_id = Column(Text)
    side_character_id = Column(Text)
