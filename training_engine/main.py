"""
Engine assembly
Wires the assessment and training-progression services together
"""
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from training_engine.config import configure_logging, settings
from training_engine.database import SessionLocal, init_db
from training_engine.services.analytics_service import AnalyticsService
from training_engine.services.attempt_service import AttemptService
from training_engine.services.certificate_service import (
    CertificateIssuer, CertificateOutbox, DatabaseCertificateIssuer
)
from training_engine.services.completion_service import CompletionService
from training_engine.services.grading_service import grading_service
from training_engine.services.progress_service import ProgressService
from training_engine.services.quiz_service import QuizService
from training_engine.services.timeout_scheduler import ThreadingTimeoutScheduler, TimeoutScheduler
from training_engine.services.training_service import TrainingService
from training_engine.utils.cache import CacheService, cache_service
from training_engine.utils.clock import Clock, system_clock
from training_engine.utils.locks import KeyedLockRegistry, lock_registry

logger = logging.getLogger(__name__)


class TrainingEngine:
    """
    Fully wired set of services sharing one clock, lock registry and
    session factory

    Every collaborator can be swapped, which is how tests freeze time,
    record certificate calls and fire timeouts by hand.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = system_clock,
        issuer: Optional[CertificateIssuer] = None,
        scheduler: Optional[TimeoutScheduler] = None,
        cache: CacheService = cache_service,
        locks: KeyedLockRegistry = lock_registry
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.scheduler = scheduler or ThreadingTimeoutScheduler(clock)

        self.issuer = issuer or DatabaseCertificateIssuer(session_factory, clock)
        self.outbox = CertificateOutbox(self.issuer, clock)
        self.completion = CompletionService(self.outbox, clock, locks)
        self.progress = ProgressService(self.completion, clock, locks)
        self.quizzes = QuizService(cache, grading_service, clock)
        self.trainings = TrainingService()
        self.attempts = AttemptService(
            self.quizzes,
            self.progress,
            clock=clock,
            scheduler=self.scheduler,
            session_factory=session_factory,
            locks=locks,
        )
        self.analytics = AnalyticsService()

    def session(self) -> Session:
        return self.session_factory()

    def recover(self) -> None:
        """
        Catch up on work lost in a restart: overdue attempts and
        undelivered certificate requests
        """
        db = self.session()
        try:
            expired = self.attempts.expire_overdue_attempts(db)
            issued = self.outbox.dispatch_pending(db)
            logger.info(
                f"Recovery complete: {len(expired)} attempts auto-submitted, "
                f"{len(issued)} certificates issued"
            )
        finally:
            db.close()

    def shutdown(self) -> None:
        """Cancel pending auto-submit timers"""
        logger.info("Shutting down training engine")
        if hasattr(self.scheduler, "shutdown"):
            self.scheduler.shutdown()


def create_engine_services(bind=None, **overrides) -> TrainingEngine:
    """
    Configure logging, create tables and return a wired engine

    Args:
        bind: Engine or connection to create the tables on; defaults to the
            bind of an overriding session_factory, else the configured engine
        **overrides: Passed to TrainingEngine
    """
    configure_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    if bind is None and "session_factory" in overrides:
        bind = getattr(overrides["session_factory"], "kw", {}).get("bind")

    try:
        init_db(bind=bind)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise

    engine = TrainingEngine(**overrides)
    engine.recover()
    logger.info("Engine startup complete")
    return engine
