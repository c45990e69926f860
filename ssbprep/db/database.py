"""Database engine, session factory and transaction helpers."""
import logging
import os
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt

from ssbprep.config import settings
from ssbprep.errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True}


if settings.DATABASE_URL.startswith("sqlite:///") and ":memory:" not in settings.DATABASE_URL:
    _db_dir = os.path.dirname(settings.DATABASE_URL.replace("sqlite:///", "", 1))
    if _db_dir:
        os.makedirs(_db_dir, exist_ok=True)

engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db() -> Iterator[Session]:
    """FastAPI dependency yielding a request-scoped database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    """FastAPI dependency returning the factory used by background tasks.

    Background work outlives the request session, so it opens its own.
    """
    return SessionLocal


def read_with_retry(db: Session, operation: Callable[[], T], description: str) -> T:
    """Run an idempotent read, retrying once on a transient database error.

    Args:
        db: Database session the read runs on
        operation: Zero-argument callable performing the read
        description: Short label used in log and error messages

    Returns:
        Whatever ``operation`` returns

    Raises:
        PersistenceError: If the read fails twice
    """

    @retry(
        stop=stop_after_attempt(2),
        retry=retry_if_exception_type(OperationalError),
        reraise=True,
    )
    def _attempt() -> T:
        try:
            return operation()
        except OperationalError:
            db.rollback()
            logger.warning(f"Transient failure during {description}, retrying once")
            raise

    try:
        return _attempt()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Read failed: {description}: {e}", exc_info=True)
        raise PersistenceError(f"Could not complete {description}") from e


@contextmanager
def write_transaction(db: Session, description: str) -> Iterator[Session]:
    """Commit the enclosed writes, or roll back and raise PersistenceError.

    Writes are never retried here; the caller surfaces "try again".
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Write failed: {description}: {e}", exc_info=True)
        raise PersistenceError(f"Could not complete {description}") from e
