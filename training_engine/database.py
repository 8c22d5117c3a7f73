"""
Database engine, session factory and declarative base
"""
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import JSON, create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from training_engine.config import settings

logger = logging.getLogger(__name__)

# JSONB on PostgreSQL, plain JSON on every other backend
JSONType = JSON().with_variant(JSONB(), "postgresql")

Base = declarative_base()


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    echo=settings.DATABASE_ECHO,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.DATABASE_URL),
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(bind=None) -> None:
    """Create all tables registered on the declarative base"""
    # Import models so they register with Base.metadata
    import training_engine.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created")


@contextmanager
def session_scope(session_factory=SessionLocal) -> Iterator[Session]:
    """
    Transactional scope around a series of operations

    Commits on success, rolls back on any exception and re-raises it.
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
