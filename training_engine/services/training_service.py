"""
Training authoring and assignment of trainings and quizzes to learners
"""
import logging
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from training_engine.exceptions import InvalidTransitionError, NotFoundError
from training_engine.models import (
    ModuleProgress, Quiz, QuizAssignment, Training, TrainingAssignment, TrainingModule
)
from training_engine.models.enums import (
    MaterialType, ProgressStatus, QuizAssignmentStatus, QuizStatus
)
from training_engine.schemas.training import ModuleCreate, TrainingCreate
from training_engine.utils.ids import to_uuid

logger = logging.getLogger(__name__)


class TrainingService:
    """Service creating trainings and the assignment rows the engine mutates"""

    def create_training(self, db: Session, request: TrainingCreate) -> Training:
        """Create a training together with its modules"""
        training = Training(
            title=request.title,
            description=request.description,
            category=request.category,
        )
        for module in request.modules:
            self._check_quiz_reference(db, module)
            training.modules.append(self._build_module(module))

        db.add(training)
        db.commit()

        logger.info(f"Created training: {training.title} with {len(request.modules)} modules")
        return training

    def add_module(self, db: Session, training_id, request: ModuleCreate) -> TrainingModule:
        """
        Append a module to a training

        Existing assignments pick up the progress row lazily: it is created
        on first use and the cascade counts it as NOT_STARTED until then.
        A QUIZ module needs a quiz assignment per learner, so one is created
        right away for every assignment that is not COMPLETED yet.

        Raises:
            InvalidTransitionError: position already taken, or a QUIZ module
                references an unpublished quiz
        """
        training = self.get_training(db, training_id)
        if any(m.order_index == request.order_index for m in training.modules):
            raise InvalidTransitionError(
                f"Training {training.id} already has a module at position {request.order_index}"
            )
        self._check_quiz_reference(db, request)
        quiz = None
        if request.material_type == MaterialType.QUIZ:
            quiz = self._get_published_quiz(db, request.quiz_id)

        module = self._build_module(request)
        training.modules.append(module)

        if quiz is not None:
            db.flush()
            open_assignments = db.query(TrainingAssignment).filter(
                TrainingAssignment.training_id == training.id,
                TrainingAssignment.status != ProgressStatus.COMPLETED
            ).all()
            for assignment in open_assignments:
                db.add(self._new_quiz_assignment(
                    quiz, assignment.learner_id, assignment.due_date, assignment, module
                ))
            logger.info(
                f"Added quiz module {module.title} to {len(open_assignments)} open assignments"
            )

        db.commit()
        return module

    def get_training(self, db: Session, training_id) -> Training:
        training = db.get(Training, to_uuid(training_id, "training"))
        if not training:
            raise NotFoundError(f"Training not found with id: {training_id}")
        return training

    def assign_training(
        self,
        db: Session,
        training_id,
        learner_id,
        due_date: Optional[date] = None
    ) -> TrainingAssignment:
        """
        Assign a training to a learner

        Creates one NOT_STARTED progress row per module and one quiz
        assignment per QUIZ module.

        Raises:
            InvalidTransitionError: learner already has this training, or a
                quiz module references an unpublished quiz
        """
        training = self.get_training(db, training_id)
        learner_id = to_uuid(learner_id, "learner")

        existing = db.query(TrainingAssignment).filter(
            TrainingAssignment.training_id == training.id,
            TrainingAssignment.learner_id == learner_id
        ).first()
        if existing:
            raise InvalidTransitionError("Training already assigned to this learner")

        assignment = TrainingAssignment(
            learner_id=learner_id,
            training_id=training.id,
            due_date=due_date,
            status=ProgressStatus.NOT_STARTED,
            completed_module_count=0,
            progress_percentage=0,
        )
        db.add(assignment)

        for module in training.modules:
            assignment.module_progress.append(
                ModuleProgress(
                    module_id=module.id,
                    status=ProgressStatus.NOT_STARTED,
                    time_spent_minutes=0,
                )
            )
            if module.material_type == MaterialType.QUIZ:
                quiz = self._get_published_quiz(db, module.quiz_id)
                db.add(self._new_quiz_assignment(quiz, learner_id, due_date, assignment, module))

        db.commit()

        logger.info(f"Assigned training {training.title} to learner {learner_id}")
        return assignment

    def assign_quiz(
        self,
        db: Session,
        quiz_id,
        learner_id,
        due_date: Optional[date] = None
    ) -> QuizAssignment:
        """
        Assign a standalone quiz to a learner

        Raises:
            InvalidTransitionError: quiz not published, or already assigned
        """
        quiz = self._get_published_quiz(db, quiz_id)
        learner_id = to_uuid(learner_id, "learner")

        existing = db.query(QuizAssignment).filter(
            QuizAssignment.quiz_id == quiz.id,
            QuizAssignment.learner_id == learner_id,
            QuizAssignment.training_assignment_id.is_(None)
        ).first()
        if existing:
            raise InvalidTransitionError("Quiz already assigned to this learner")

        assignment = self._new_quiz_assignment(quiz, learner_id, due_date)
        db.add(assignment)
        db.commit()

        logger.info(f"Assigned quiz {quiz.title} to learner {learner_id}")
        return assignment

    def get_quiz_assignment_for_module(
        self,
        db: Session,
        training_assignment_id,
        module_id
    ) -> QuizAssignment:
        """Quiz assignment backing one QUIZ module of a training assignment"""
        quiz_assignment = db.query(QuizAssignment).filter(
            QuizAssignment.training_assignment_id == to_uuid(training_assignment_id, "assignment"),
            QuizAssignment.module_id == to_uuid(module_id, "module")
        ).first()
        if not quiz_assignment:
            raise NotFoundError(
                f"No quiz assignment for module {module_id} of assignment {training_assignment_id}"
            )
        return quiz_assignment

    def _get_published_quiz(self, db: Session, quiz_id) -> Quiz:
        quiz = db.get(Quiz, to_uuid(quiz_id, "quiz"))
        if not quiz:
            raise NotFoundError(f"Quiz not found with id: {quiz_id}")
        if quiz.status != QuizStatus.PUBLISHED:
            raise InvalidTransitionError("Can only assign published quizzes")
        return quiz

    @staticmethod
    def _new_quiz_assignment(
        quiz: Quiz,
        learner_id,
        due_date: Optional[date],
        training_assignment: TrainingAssignment = None,
        module: TrainingModule = None
    ) -> QuizAssignment:
        return QuizAssignment(
            learner_id=learner_id,
            quiz_id=quiz.id,
            training_assignment=training_assignment,
            module_id=module.id if module else None,
            due_date=due_date,
            status=QuizAssignmentStatus.NOT_STARTED,
            attempts_used=0,
            passed=False,
        )

    @staticmethod
    def _check_quiz_reference(db: Session, module: ModuleCreate) -> None:
        if module.quiz_id is not None and db.get(Quiz, module.quiz_id) is None:
            raise NotFoundError(f"Quiz not found with id: {module.quiz_id}")

    @staticmethod
    def _build_module(request: ModuleCreate) -> TrainingModule:
        return TrainingModule(
            title=request.title,
            description=request.description,
            material_type=request.material_type,
            material_url=request.material_url,
            duration_minutes=request.duration_minutes,
            order_index=request.order_index,
            is_mandatory=request.is_mandatory,
            quiz_id=request.quiz_id,
        )
