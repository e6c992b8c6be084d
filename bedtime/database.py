"""Database engine, session factory and readiness check."""

import logging

import sqlalchemy
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_delay, wait_fixed

from bedtime.config import settings

logger = logging.getLogger(__name__)

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """FastAPI dependency yielding a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@retry(
    stop=stop_after_delay(settings.DB_READY_TIMEOUT),
    wait=wait_fixed(2),
    retry=retry_if_exception_type(OperationalError),
    reraise=True,
)
def wait_for_database(session_factory=SessionLocal):
    """Block until the database accepts connections."""
    db = session_factory()
    try:
        db.execute(sqlalchemy.text("SELECT 1"))
        logger.info("Database is ready")
    except OperationalError as e:
        logger.info(f"Waiting for database... ({e.__class__.__name__})")
        raise
    finally:
        db.close()


def tables_exist(session_factory=SessionLocal) -> bool:
    """Check whether the story_requests table has been created."""
    db = session_factory()
    try:
        inspector = sqlalchemy.inspect(db.get_bind())
        return "story_requests" in inspector.get_table_names()
    finally:
        db.close()
