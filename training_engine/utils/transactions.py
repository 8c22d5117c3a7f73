"""
Commit helper translating optimistic-concurrency failures
"""
import logging

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from training_engine.exceptions import ConcurrentUpdateError

logger = logging.getLogger(__name__)


def commit(db: Session, what: str) -> None:
    """
    Commit the session, rolling back on failure

    Raises:
        ConcurrentUpdateError: a versioned row was changed by someone else
            since it was loaded
    """
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning(f"Concurrent update while saving {what}: {str(e)}")
        raise ConcurrentUpdateError(
            f"{what} was modified concurrently, retry the operation"
        ) from e
    except Exception:
        db.rollback()
        raise


def flush(db: Session, what: str) -> None:
    """Flush pending changes, with the same conflict translation as commit"""
    try:
        db.flush()
    except StaleDataError as e:
        db.rollback()
        logger.warning(f"Concurrent update while flushing {what}: {str(e)}")
        raise ConcurrentUpdateError(
            f"{what} was modified concurrently, retry the operation"
        ) from e
