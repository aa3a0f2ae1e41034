"""
Database Configuration
"""
import logging
import time
from typing import Callable, Generator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError

from ledgerbook.core.config import settings
from ledgerbook.core.exceptions import ConcurrencyConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Get the properly formatted database URL
db_url = settings.database_url

engine = create_engine(
    db_url,
    connect_args={"check_same_thread": False} if "sqlite" in db_url else {},
    echo=settings.DEBUG
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Ensures the session is closed after use; anything not committed is
    discarded with it.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database tables"""
    from ledgerbook import models  # noqa: F401  registers every table on Base
    Base.metadata.create_all(bind=engine)


def run_in_transaction(db: Session, work: Callable[[], T], max_retries: int = None) -> T:
    """
    Run ``work`` and commit once. Any exception rolls the session back.

    Lost updates (``ConcurrencyConflict`` or SQLAlchemy's ``StaleDataError``
    from a versioned row) are retried with exponential backoff; the last
    conflict is raised once the attempts are exhausted.
    """
    attempts = max_retries if max_retries is not None else settings.TRANSACTION_MAX_RETRIES
    attempts = max(1, attempts)

    for attempt in range(1, attempts + 1):
        try:
            result = work()
            db.commit()
            return result
        except StaleDataError as exc:
            db.rollback()
            conflict = ConcurrencyConflict(
                "The record was changed by another request. Please try again.",
                {"reason": str(exc)}
            )
        except ConcurrencyConflict as exc:
            db.rollback()
            conflict = exc
        except Exception:
            db.rollback()
            raise

        if attempt == attempts:
            raise conflict

        delay = settings.RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1))
        logger.warning(
            f"Concurrent update detected (attempt {attempt}/{attempts}), retrying in {delay:.2f}s"
        )
        time.sleep(delay)
