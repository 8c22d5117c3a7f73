"""
Certificate issuance - issuer collaborator and outbox dispatcher

The completion cascade only ever writes a CertificateRequest row. Delivering
it to the issuer happens afterwards, outside any assignment lock, and a
failing issuer never undoes a completion.
"""
import logging
import re
import uuid
from datetime import date, timedelta
from typing import Callable, List, Optional, Protocol

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from training_engine.config import settings
from training_engine.database import SessionLocal
from training_engine.exceptions import InvalidTransitionError, NotFoundError
from training_engine.models import Certificate, CertificateRequest, TrainingAssignment
from training_engine.models.enums import CertificateRequestStatus, ProgressStatus
from training_engine.utils.clock import Clock, system_clock
from training_engine.utils.ids import to_uuid

logger = logging.getLogger(__name__)


def _add_years(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        # 29 February
        return day.replace(year=day.year + years, day=28)


class CertificateIssuer(Protocol):
    """External collaborator that turns a completed assignment into a certificate"""

    def issue(self, training_assignment_id: str) -> str:
        ...


class DatabaseCertificateIssuer:
    """
    Default issuer writing Certificate rows

    Uses its own session so it behaves like a remote collaborator. Issuing
    twice for the same assignment returns the existing certificate number.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Clock = system_clock
    ):
        self.session_factory = session_factory
        self.clock = clock

    def issue(self, training_assignment_id: str) -> str:
        """
        Issue a certificate for a completed training assignment

        Args:
            training_assignment_id: Assignment UUID (string)

        Returns:
            Certificate number

        Raises:
            NotFoundError: unknown assignment
            InvalidTransitionError: assignment is not COMPLETED
        """
        db = self.session_factory()
        try:
            assignment_uuid = to_uuid(training_assignment_id, "assignment")
            assignment = db.get(TrainingAssignment, assignment_uuid)
            if not assignment:
                raise NotFoundError(f"Assignment not found: {training_assignment_id}")

            if assignment.status != ProgressStatus.COMPLETED:
                raise InvalidTransitionError(
                    "Training must be completed to generate certificate"
                )

            existing = db.query(Certificate).filter(
                Certificate.assignment_id == assignment_uuid
            ).first()
            if existing:
                return existing.certificate_number

            today = self.clock.now().date()
            certificate = Certificate(
                certificate_number=self.generate_certificate_number(
                    assignment.training.title, today
                ),
                learner_id=assignment.learner_id,
                training_id=assignment.training_id,
                assignment_id=assignment.id,
                issued_date=today,
                issued_by=settings.CERTIFICATE_ISSUED_BY,
            )
            certificate.verification_url = (
                f"/api/certificates/verify/{certificate.certificate_number}"
            )

            if (assignment.training.category or "").upper() == "CERTIFICATION":
                certificate.expiry_date = _add_years(today, settings.CERTIFICATE_VALIDITY_YEARS)

            db.add(certificate)
            db.commit()

            logger.info(
                f"Generated certificate {certificate.certificate_number} "
                f"for assignment {training_assignment_id}"
            )
            return certificate.certificate_number
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def generate_certificate_number(training_title: str, issued_on: date) -> str:
        """PREFIX-YEAR-XXX-8HEX, XXX being the first letters of the training title"""
        letters = re.sub(r"[^A-Za-z]", "", training_title or "")[:3].upper() or "TRN"
        suffix = uuid.uuid4().hex[:8].upper()
        return f"{settings.CERTIFICATE_NUMBER_PREFIX}-{issued_on.year}-{letters}-{suffix}"


class CertificateOutbox:
    """
    Delivers queued certificate requests to the issuer

    The issuer is treated as at-least-once: a request row is issued at most
    once per assignment because the cascade only creates it on the first
    completion edge, never because the issuer de-duplicates.

    Before calling the issuer a dispatcher claims the row with a conditional
    UPDATE (PENDING -> DISPATCHING) and commits, so overlapping dispatch runs
    (a live completion racing recover(), or two workers) call the issuer once.
    A claim older than CERTIFICATE_CLAIM_TIMEOUT_SECONDS is treated as
    abandoned by a crashed dispatcher and may be taken over.
    """

    def __init__(
        self,
        issuer: CertificateIssuer,
        clock: Clock = system_clock,
        max_retries: int = None,
        claim_timeout_seconds: int = None
    ):
        self.issuer = issuer
        self.clock = clock
        self.max_retries = max_retries or settings.CERTIFICATE_MAX_RETRIES
        self.claim_timeout_seconds = (
            claim_timeout_seconds or settings.CERTIFICATE_CLAIM_TIMEOUT_SECONDS
        )

    def enqueue(self, db: Session, assignment_id) -> CertificateRequest:
        """Add a PENDING request to the current transaction (no commit)"""
        request = CertificateRequest(
            assignment_id=assignment_id,
            status=CertificateRequestStatus.PENDING,
            attempts=0,
            requested_at=self.clock.now(),
        )
        db.add(request)
        logger.info(f"Queued certificate request for assignment {assignment_id}")
        return request

    def dispatch(self, db: Session, assignment_id) -> Optional[str]:
        """
        Deliver the request of one assignment

        Args:
            db: Database session
            assignment_id: Training assignment UUID

        Returns:
            Certificate id when issued (now or earlier), None otherwise
        """
        assignment_id = to_uuid(assignment_id, "assignment")
        request = db.query(CertificateRequest).filter(
            CertificateRequest.assignment_id == assignment_id
        ).populate_existing().first()

        if not request:
            return None
        if request.status == CertificateRequestStatus.ISSUED:
            return request.certificate_id
        if request.status == CertificateRequestStatus.FAILED:
            logger.warning(
                f"Certificate request for assignment {assignment_id} gave up "
                f"after {request.attempts} attempts"
            )
            return None

        return self._deliver(db, request)

    def dispatch_pending(self, db: Session) -> List[str]:
        """
        Deliver every PENDING request, plus DISPATCHING ones whose claim expired

        Returns:
            Certificate ids issued during this run
        """
        pending = db.query(CertificateRequest).filter(
            self._claimable()
        ).order_by(CertificateRequest.requested_at).all()

        issued = []
        for request in pending:
            certificate_id = self._deliver(db, request)
            if certificate_id:
                issued.append(certificate_id)

        logger.info(f"Dispatched {len(pending)} certificate requests, {len(issued)} issued")
        return issued

    def retry_failed(self, db: Session, assignment_id) -> Optional[str]:
        """Reset a FAILED request to PENDING and deliver it again"""
        assignment_id = to_uuid(assignment_id, "assignment")
        request = db.query(CertificateRequest).filter(
            CertificateRequest.assignment_id == assignment_id
        ).first()
        if not request:
            raise NotFoundError(f"No certificate request for assignment {assignment_id}")

        if request.status == CertificateRequestStatus.FAILED:
            request.status = CertificateRequestStatus.PENDING
            request.attempts = 0
            db.commit()

        return self.dispatch(db, assignment_id)

    def _claimable(self):
        lease_cutoff = self.clock.now() - timedelta(seconds=self.claim_timeout_seconds)
        return or_(
            CertificateRequest.status == CertificateRequestStatus.PENDING,
            and_(
                CertificateRequest.status == CertificateRequestStatus.DISPATCHING,
                CertificateRequest.claimed_at < lease_cutoff
            )
        )

    def _claim(self, db: Session, request: CertificateRequest) -> bool:
        claimed = db.query(CertificateRequest).filter(
            CertificateRequest.id == request.id,
            self._claimable()
        ).update(
            {
                CertificateRequest.status: CertificateRequestStatus.DISPATCHING,
                CertificateRequest.attempts: CertificateRequest.attempts + 1,
                CertificateRequest.claimed_at: self.clock.now(),
            },
            synchronize_session=False
        )
        db.commit()
        db.refresh(request)
        return claimed == 1

    def _release(self, db: Session, request: CertificateRequest, values: dict) -> None:
        values[CertificateRequest.claimed_at] = None
        db.query(CertificateRequest).filter(
            CertificateRequest.id == request.id,
            CertificateRequest.status == CertificateRequestStatus.DISPATCHING
        ).update(values, synchronize_session=False)
        db.commit()
        db.refresh(request)

    def _deliver(self, db: Session, request: CertificateRequest) -> Optional[str]:
        if not self._claim(db, request):
            logger.info(
                f"Certificate request for assignment {request.assignment_id} "
                f"is already {request.status.value}"
            )
            if request.status == CertificateRequestStatus.ISSUED:
                return request.certificate_id
            return None

        try:
            certificate_id = self.issuer.issue(str(request.assignment_id))
        except Exception as e:
            gave_up = request.attempts >= self.max_retries
            self._release(db, request, {
                CertificateRequest.status: (
                    CertificateRequestStatus.FAILED if gave_up
                    else CertificateRequestStatus.PENDING
                ),
                CertificateRequest.last_error: str(e),
            })
            logger.error(
                f"Certificate issuance failed for assignment {request.assignment_id} "
                f"(attempt {request.attempts}/{self.max_retries}): {str(e)}"
            )
            return None

        self._release(db, request, {
            CertificateRequest.status: CertificateRequestStatus.ISSUED,
            CertificateRequest.certificate_id: str(certificate_id),
            CertificateRequest.issued_at: self.clock.now(),
            CertificateRequest.last_error: None,
        })

        logger.info(f"Certificate {certificate_id} issued for assignment {request.assignment_id}")
        return request.certificate_id
