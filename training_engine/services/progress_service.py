"""
Module progress tracking
NOT_STARTED -> IN_PROGRESS -> COMPLETED per module, no backward transitions
"""
import logging
from typing import Callable

from sqlalchemy.orm import Session

from training_engine.exceptions import InvalidTransitionError, NotFoundError
from training_engine.models import ModuleProgress, TrainingAssignment, TrainingModule
from training_engine.models.enums import ProgressStatus
from training_engine.schemas.attempt import AttemptResult
from training_engine.schemas.training import ModuleProgressView, ModuleUpdate
from training_engine.services.completion_service import ASSIGNMENT_LOCK, CompletionService
from training_engine.utils.clock import Clock, system_clock
from training_engine.utils.ids import to_uuid
from training_engine.utils.locks import KeyedLockRegistry, lock_registry
from training_engine.utils.transactions import commit, flush

logger = logging.getLogger(__name__)


class ProgressService:
    """
    Service owning per-module state of a training assignment

    Every operation, including no-ops, runs the completion cascade in the
    same transaction under the assignment lock. QUIZ modules can only be
    completed through complete_via_quiz.
    """

    def __init__(
        self,
        completion: CompletionService,
        clock: Clock = system_clock,
        locks: KeyedLockRegistry = lock_registry
    ):
        self.completion = completion
        self.clock = clock
        self.locks = locks

    def start_module(self, db: Session, assignment_id, module_id) -> ModuleUpdate:
        """
        Learner opens a module: NOT_STARTED -> IN_PROGRESS

        Re-starting an IN_PROGRESS or COMPLETED module is a no-op.
        """
        def mutate(module: TrainingModule, progress: ModuleProgress) -> bool:
            if progress.status != ProgressStatus.NOT_STARTED:
                return False
            progress.status = ProgressStatus.IN_PROGRESS
            progress.started_at = self.clock.now()
            return True

        return self._mutate(db, assignment_id, module_id, mutate)

    def complete_module(
        self,
        db: Session,
        assignment_id,
        module_id,
        notes: str = None,
        time_spent_minutes: int = None
    ) -> ModuleUpdate:
        """
        Learner marks a non-quiz module done: IN_PROGRESS -> COMPLETED

        Args:
            db: Database session
            assignment_id: Training assignment UUID
            module_id: Module UUID
            notes: Optional learner notes
            time_spent_minutes: Optional time spent on the module

        Raises:
            InvalidTransitionError: QUIZ module, or module not started yet
        """
        def mutate(module: TrainingModule, progress: ModuleProgress) -> bool:
            if module.is_quiz:
                raise InvalidTransitionError(
                    f"Quiz module {module.id} is completed by passing its quiz"
                )
            if progress.status == ProgressStatus.COMPLETED:
                return False
            if progress.status == ProgressStatus.NOT_STARTED:
                raise InvalidTransitionError(
                    f"Module {module.id} must be started before it can be completed"
                )

            progress.status = ProgressStatus.COMPLETED
            progress.completed_at = self.clock.now()
            if notes is not None:
                progress.notes = notes
            if time_spent_minutes is not None:
                progress.time_spent_minutes = time_spent_minutes
            return True

        return self._mutate(db, assignment_id, module_id, mutate)

    def complete_via_quiz(
        self,
        db: Session,
        assignment_id,
        module_id,
        result: AttemptResult
    ) -> ModuleUpdate:
        """
        Apply a submitted quiz attempt to its QUIZ module

        Passing completes the module; failing leaves it where it is.
        """
        def mutate(module: TrainingModule, progress: ModuleProgress) -> bool:
            if not module.is_quiz:
                raise InvalidTransitionError(f"Module {module.id} is not a quiz module")
            if not result.passed or progress.status == ProgressStatus.COMPLETED:
                return False

            now = self.clock.now()
            if progress.started_at is None:
                progress.started_at = now
            progress.status = ProgressStatus.COMPLETED
            progress.completed_at = now
            return True

        return self._mutate(db, assignment_id, module_id, mutate)

    def _mutate(
        self,
        db: Session,
        assignment_id,
        module_id,
        mutation: Callable[[TrainingModule, ModuleProgress], bool]
    ) -> ModuleUpdate:
        assignment_id = to_uuid(assignment_id, "assignment")
        module_id = to_uuid(module_id, "module")

        with self.locks.hold(ASSIGNMENT_LOCK, assignment_id):
            try:
                assignment = self.completion.load_assignment(db, assignment_id)
                module = self._get_module(db, assignment, module_id)
                progress = self._get_or_create_progress(db, assignment, module)

                previous = ProgressStatus(progress.status)
                changed = mutation(module, progress)
                flush(db, f"module progress {module_id}")

                outcome = self.completion.apply(db, assignment)
                commit(db, f"training assignment {assignment_id}")
            except Exception:
                db.rollback()
                raise

        if changed:
            logger.info(
                f"Module {module_id} of assignment {assignment_id}: "
                f"{previous.value} -> {ProgressStatus(progress.status).value}"
            )

        self.completion.dispatch_certificate(db, outcome)

        return ModuleUpdate(
            module=self.to_view(module, progress),
            changed=changed,
            assignment=outcome,
        )

    def _get_module(self, db: Session, assignment: TrainingAssignment, module_id) -> TrainingModule:
        module = db.get(TrainingModule, module_id)
        if not module or module.training_id != assignment.training_id:
            raise NotFoundError(
                f"Module {module_id} is not part of training assignment {assignment.id}"
            )
        return module

    def _get_or_create_progress(
        self,
        db: Session,
        assignment: TrainingAssignment,
        module: TrainingModule
    ) -> ModuleProgress:
        progress = db.query(ModuleProgress).filter(
            ModuleProgress.assignment_id == assignment.id,
            ModuleProgress.module_id == module.id
        ).populate_existing().first()

        if progress is None:
            # Module added to the training after it was assigned
            progress = ModuleProgress(
                assignment_id=assignment.id,
                module_id=module.id,
                status=ProgressStatus.NOT_STARTED,
                time_spent_minutes=0,
            )
            db.add(progress)

        return progress

    @staticmethod
    def to_view(module: TrainingModule, progress: ModuleProgress = None) -> ModuleProgressView:
        return ModuleProgressView(
            module_id=str(module.id),
            title=module.title,
            material_type=module.material_type,
            order_index=module.order_index,
            is_mandatory=module.is_mandatory,
            quiz_id=str(module.quiz_id) if module.quiz_id else None,
            status=progress.status if progress else ProgressStatus.NOT_STARTED,
            started_at=progress.started_at if progress else None,
            completed_at=progress.completed_at if progress else None,
            time_spent_minutes=(progress.time_spent_minutes or 0) if progress else 0,
            notes=progress.notes if progress else None,
        )
