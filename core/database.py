"""
Database Configuration

SQLAlchemy engine, session factory and declarative base shared by all models.
"""

from contextlib import contextmanager
from typing import Iterator
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from core.config import get_settings
from core.exceptions import StorageError
from core.logger import get_logger

settings = get_settings()
logger = get_logger(__name__)

connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.DATABASE_ECHO,
    pool_pre_ping=True,
    connect_args=connect_args,
)

# expire_on_commit=False keeps loaded payment records readable after the
# session that produced them is closed (worker threads hand them back).
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

Base = declarative_base()


def get_db() -> Iterator[Session]:
    """
    FastAPI dependency that yields a database session.

    Yields:
        Session: Database session, closed after the request
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create all tables registered on Base."""
    # Import models so they register on Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def session_scope(session_factory=None) -> Iterator[Session]:
    """
    Provide a transactional scope around a series of operations.

    Commits on success and rolls back on any error. SQLAlchemy errors are
    re-raised as StorageError so callers never see driver exceptions.

    Args:
        session_factory: Session factory to use (defaults to SessionLocal)

    Yields:
        Session: Database session bound to one unit of work

    Raises:
        StorageError: If the database is unreachable or rejects the work
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Database error, transaction rolled back: {str(e)}")
        raise StorageError(f"Storage unavailable: {e.__class__.__name__}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
