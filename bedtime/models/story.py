"""Story model (written by the generation pipeline)."""

import uuid

from sqlalchemy import Column, DateTime, Index, Text

from bedtime.database import Base
from bedtime.models.story_request import utcnow


class Story(Base):
    """A generated story. Only the fields the client reads are mapped."""

    __tablename__ = "stories"

    id = Column(Text, primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(Text)
    user_id = Column(Text, nullable=False)
    series_id = Column(Text)
    title = Column(Text)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (Index("idx_stories_request_id", "request_id"),)
