"""Database dependencies for FastAPI endpoints."""

from sqlalchemy.orm import Session, sessionmaker

from app.db.session import SessionLocal


def get_session_factory() -> sessionmaker[Session]:
    """Return the session factory used by read-only report repositories.

    Report reads run concurrently, so each read opens its own session
    instead of sharing one request-scoped session.
    """

    return SessionLocal
