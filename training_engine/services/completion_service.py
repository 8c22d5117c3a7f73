"""
Training completion cascade
Recomputes assignment status from module progress and requests certificates
"""
import logging
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from training_engine.exceptions import NotFoundError
from training_engine.models import ModuleProgress, TrainingAssignment, TrainingModule
from training_engine.models.enums import ProgressStatus
from training_engine.schemas.training import CascadeOutcome
from training_engine.services.certificate_service import CertificateOutbox
from training_engine.utils.clock import Clock, system_clock
from training_engine.utils.ids import to_uuid
from training_engine.utils.locks import KeyedLockRegistry, lock_registry
from training_engine.utils.transactions import commit, flush

logger = logging.getLogger(__name__)

ASSIGNMENT_LOCK = "training_assignment"


class CompletionService:
    """
    Service deriving training-assignment status from its modules

    Rules:
    - COMPLETED: every mandatory module is COMPLETED (optional modules never
      block). A training without mandatory modules needs all modules done.
    - IN_PROGRESS: any module has left NOT_STARTED.
    - NOT_STARTED: otherwise.

    COMPLETED is terminal. The certificate request is edge-triggered: it is
    queued only when certificate_requested_at is still unset, so re-running
    the cascade on a completed assignment never queues a second one.
    """

    def __init__(
        self,
        outbox: Optional[CertificateOutbox] = None,
        clock: Clock = system_clock,
        locks: KeyedLockRegistry = lock_registry
    ):
        self.outbox = outbox
        self.clock = clock
        self.locks = locks

    def recompute(self, db: Session, assignment_id) -> CascadeOutcome:
        """
        Recompute one assignment in its own transaction and dispatch any
        certificate request it produced

        Args:
            db: Database session
            assignment_id: Training assignment UUID

        Returns:
            CascadeOutcome describing the recomputation

        Raises:
            NotFoundError: unknown assignment
            ConcurrentUpdateError: the assignment changed underneath; retry
        """
        assignment_id = to_uuid(assignment_id, "assignment")

        with self.locks.hold(ASSIGNMENT_LOCK, assignment_id):
            assignment = self.load_assignment(db, assignment_id)
            outcome = self.apply(db, assignment)
            commit(db, f"training assignment {assignment_id}")

        self.dispatch_certificate(db, outcome)
        return outcome

    def load_assignment(self, db: Session, assignment_id) -> TrainingAssignment:
        assignment = db.get(
            TrainingAssignment, assignment_id, populate_existing=True, with_for_update=True
        )
        if not assignment:
            raise NotFoundError(f"Training assignment not found: {assignment_id}")
        return assignment

    def apply(self, db: Session, assignment: TrainingAssignment) -> CascadeOutcome:
        """
        Recompute inside the caller's transaction and lock (no commit)

        Callers that just mutated a ModuleProgress row use this so the
        mutation and the recomputation land in one commit.
        """
        modules, progress = self._load_state(db, assignment)
        previous_status = ProgressStatus(assignment.status)
        now = self.clock.now()

        completed_count = sum(
            1 for m in modules if progress[m.id] == ProgressStatus.COMPLETED
        )
        total = len(modules)
        new_status = self._derive_status(modules, progress, previous_status)

        assignment.completed_module_count = completed_count
        assignment.progress_percentage = (completed_count * 100 // total) if total else 0
        assignment.status = new_status

        if new_status != ProgressStatus.NOT_STARTED and assignment.started_at is None:
            assignment.started_at = now

        completion_edge = (
            previous_status != ProgressStatus.COMPLETED
            and new_status == ProgressStatus.COMPLETED
        )
        if completion_edge:
            assignment.completed_at = now
            logger.info(f"Training assignment {assignment.id} completed")

        certificate_requested = False
        if new_status == ProgressStatus.COMPLETED and assignment.certificate_requested_at is None:
            assignment.certificate_requested_at = now
            if self.outbox is not None:
                self.outbox.enqueue(db, assignment.id)
            certificate_requested = True

        flush(db, f"training assignment {assignment.id}")

        logger.info(
            f"Cascade for assignment {assignment.id}: {previous_status.value} -> "
            f"{new_status.value}, {completed_count}/{total} modules completed"
        )

        return CascadeOutcome(
            assignment_id=str(assignment.id),
            previous_status=previous_status,
            status=new_status,
            completed_module_count=completed_count,
            progress_percentage=assignment.progress_percentage,
            completion_edge=completion_edge,
            certificate_requested=certificate_requested,
        )

    def dispatch_certificate(self, db: Session, outcome: CascadeOutcome) -> Optional[str]:
        """Hand a freshly queued request to the issuer; never raises on issuer failure"""
        if not outcome.certificate_requested or self.outbox is None:
            return None
        return self.outbox.dispatch(db, outcome.assignment_id)

    def _load_state(
        self,
        db: Session,
        assignment: TrainingAssignment
    ) -> Tuple[list, Dict]:
        modules = db.query(TrainingModule).filter(
            TrainingModule.training_id == assignment.training_id
        ).order_by(TrainingModule.order_index).all()

        rows = db.query(ModuleProgress).filter(
            ModuleProgress.assignment_id == assignment.id
        ).all()
        by_module = {row.module_id: ProgressStatus(row.status) for row in rows}

        progress = {
            m.id: by_module.get(m.id, ProgressStatus.NOT_STARTED) for m in modules
        }
        return modules, progress

    @staticmethod
    def _derive_status(modules, progress, previous_status: ProgressStatus) -> ProgressStatus:
        if previous_status == ProgressStatus.COMPLETED:
            return ProgressStatus.COMPLETED
        if not modules:
            return ProgressStatus.NOT_STARTED

        gating = [m for m in modules if m.is_mandatory] or modules
        if all(progress[m.id] == ProgressStatus.COMPLETED for m in gating):
            return ProgressStatus.COMPLETED

        if any(status != ProgressStatus.NOT_STARTED for status in progress.values()):
            return ProgressStatus.IN_PROGRESS

        return ProgressStatus.NOT_STARTED
