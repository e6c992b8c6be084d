"""Remote data store access for story requests and stories."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.exc import SQLAlchemyError

from bedtime.models.story import Story
from bedtime.models.story_request import (
    NON_TERMINAL_STATUSES,
    RequestStatus,
    StoryRequest,
    StoryRequestCharacter,
    StoryRequestChild,
    utcnow,
)
from bedtime.services.change_feed import ChangeEvent, ChangeFeed

logger = logging.getLogger(__name__)

TABLE = "story_requests"


class StoreError(Exception):
    """Raised when a read or write against the store fails."""


class RequestStore:
    """Reads and writes story request rows.

    Each operation opens its own session from the factory. Successful writes
    are published to the change feed after commit.
    """

    def __init__(self, session_factory, feed: Optional[ChangeFeed] = None):
        self.session_factory = session_factory
        self.feed = feed

    def _publish(self, event: str, row: Dict[str, Any]):
        if self.feed is not None:
            self.feed.publish(ChangeEvent(event=event, table=TABLE, row=row))

    def create_story_request(
        self,
        user_id: str,
        child_ids: Optional[List[str]] = None,
        category_character_ids: Optional[List[str]] = None,
        side_character_ids: Optional[List[str]] = None,
        **fields,
    ) -> Dict[str, Any]:
        """Insert a queued request plus its child and character links."""
        db = self.session_factory()
        try:
            request = StoryRequest(user_id=user_id, status=RequestStatus.QUEUED.value, **fields)
            db.add(request)
            db.flush()  # Flush to get the generated id

            for child_id in child_ids or []:
                db.add(StoryRequestChild(story_request_id=request.id, child_id=child_id))
            for char_id in category_character_ids or []:
                db.add(StoryRequestCharacter(story_request_id=request.id, category_character_id=char_id))
            for char_id in side_character_ids or []:
                db.add(StoryRequestCharacter(story_request_id=request.id, side_character_id=char_id))

            db.commit()
            row = request.to_dict()
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(f"Could not create story request: {e}") from e
        finally:
            db.close()

        logger.info(f"Created story request {row['id']} for user {user_id}")
        self._publish("insert", row)
        return row

    def get_request(self, request_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Return a single request row, or None."""
        db = self.session_factory()
        try:
            query = db.query(StoryRequest).filter(StoryRequest.id == request_id)
            if user_id is not None:
                query = query.filter(StoryRequest.user_id == user_id)
            request = query.first()
            return request.to_dict() if request else None
        except SQLAlchemyError as e:
            raise StoreError(f"Could not load story request {request_id}: {e}") from e
        finally:
            db.close()

    def list_pending(
        self,
        user_id: str,
        window: timedelta,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Non-terminal requests of a user created within window, newest first."""
        cutoff = (now or utcnow()) - window
        db = self.session_factory()
        try:
            requests = (
                db.query(StoryRequest)
                .filter(
                    StoryRequest.user_id == user_id,
                    StoryRequest.status.in_([s.value for s in NON_TERMINAL_STATUSES]),
                    StoryRequest.created_at >= cutoff,
                )
                .order_by(desc(StoryRequest.created_at))
                .all()
            )
            return [r.to_dict() for r in requests]
        except SQLAlchemyError as e:
            raise StoreError(f"Could not list pending requests: {e}") from e
        finally:
            db.close()

    def update_status(
        self,
        request_id: str,
        status: RequestStatus,
        error_message: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Write status (and optionally an error message) to one request."""
        db = self.session_factory()
        try:
            request = db.query(StoryRequest).filter(StoryRequest.id == request_id).first()
            if not request:
                return None
            request.status = status.value
            if error_message is not None:
                request.error_message = error_message
            db.commit()
            row = request.to_dict()
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(f"Could not update story request {request_id}: {e}") from e
        finally:
            db.close()

        self._publish("update", row)
        return row

    def claim_for_generation(self, request_id: str) -> bool:
        """Mark a queued request as started, at most once across clients.

        Sets generation_started_at and the optimistic 'processing' status in
        one conditional update. Returns False when the request is gone, no
        longer queued, or already claimed.
        """
        db = self.session_factory()
        try:
            claimed = (
                db.query(StoryRequest)
                .filter(
                    StoryRequest.id == request_id,
                    StoryRequest.status == RequestStatus.QUEUED.value,
                    StoryRequest.generation_started_at.is_(None),
                )
                .update(
                    {
                        StoryRequest.status: RequestStatus.PROCESSING.value,
                        StoryRequest.generation_started_at: utcnow(),
                        StoryRequest.updated_at: utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            row = None
            if claimed:
                request = db.query(StoryRequest).filter(StoryRequest.id == request_id).first()
                row = request.to_dict() if request else None
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(f"Could not claim story request {request_id}: {e}") from e
        finally:
            db.close()

        if row:
            self._publish("update", row)
        return bool(claimed)

    def delete_request(self, request_id: str, user_id: Optional[str] = None) -> bool:
        """Delete one request. Returns False when no row matched."""
        db = self.session_factory()
        try:
            query = db.query(StoryRequest).filter(StoryRequest.id == request_id)
            if user_id is not None:
                query = query.filter(StoryRequest.user_id == user_id)
            request = query.first()
            if not request:
                return False
            row = request.to_dict()
            db.delete(request)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(f"Could not delete story request {request_id}: {e}") from e
        finally:
            db.close()

        logger.info(f"Deleted story request {request_id}")
        self._publish("delete", row)
        return True

    def find_story_for_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        """Story produced from a request, once the pipeline has written it."""
        db = self.session_factory()
        try:
            story = db.query(Story).filter(Story.request_id == request_id).first()
            if not story:
                return None
            return {
                "id": story.id,
                "request_id": story.request_id,
                "title": story.title,
                "series_id": story.series_id,
            }
        except SQLAlchemyError as e:
            raise StoreError(f"Could not look up story for request {request_id}: {e}") from e
        finally:
            db.close()
