"""
Analytics service for quiz statistics and assignment progress views
"""
import logging
from typing import Dict

from sqlalchemy import func
from sqlalchemy.orm import Session

from training_engine.exceptions import NotFoundError
from training_engine.models import (
    CertificateRequest, ModuleProgress, Quiz, QuizAssignment, QuizAttempt,
    TrainingAssignment, TrainingModule
)
from training_engine.models.enums import CertificateRequestStatus, QuizAssignmentStatus
from training_engine.schemas.attempt import AttemptHistory, AttemptSummary
from training_engine.schemas.training import AssignmentProgressView, QuizStatistics
from training_engine.services.progress_service import ProgressService
from training_engine.utils.ids import to_uuid

logger = logging.getLogger(__name__)


class AnalyticsService:
    """Service for read-only reporting over quizzes and assignments"""

    def get_quiz_statistics(self, db: Session, quiz_id) -> QuizStatistics:
        """
        Get aggregate statistics for a quiz

        Args:
            db: Database session
            quiz_id: Quiz UUID

        Returns:
            QuizStatistics over every assignment of the quiz
        """
        quiz = db.get(Quiz, to_uuid(quiz_id, "quiz"))
        if not quiz:
            raise NotFoundError(f"Quiz not found with id: {quiz_id}")

        assignments = db.query(QuizAssignment).filter(
            QuizAssignment.quiz_id == quiz.id
        ).all()

        total_attempts = db.query(func.count(QuizAttempt.id)).join(
            QuizAssignment, QuizAttempt.assignment_id == QuizAssignment.id
        ).filter(QuizAssignment.quiz_id == quiz.id).scalar() or 0

        scored = [a.best_score for a in assignments if a.best_score is not None]
        average = round(sum(scored) / len(scored), 2) if scored else None

        return QuizStatistics(
            quiz_id=str(quiz.id),
            total_assignments=len(assignments),
            completed_count=sum(
                1 for a in assignments if a.status == QuizAssignmentStatus.COMPLETED
            ),
            passed_count=sum(1 for a in assignments if a.passed),
            failed_count=sum(
                1 for a in assignments if a.status == QuizAssignmentStatus.FAILED
            ),
            average_best_score=average,
            total_attempts=total_attempts,
            total_questions=len(quiz.questions),
            total_points=quiz.total_points,
        )

    def get_assignment_progress(self, db: Session, assignment_id) -> AssignmentProgressView:
        """
        Get a training assignment with its modules in display order

        Modules added after assignment show as NOT_STARTED.
        """
        assignment = db.get(
            TrainingAssignment, to_uuid(assignment_id, "assignment"), populate_existing=True
        )
        if not assignment:
            raise NotFoundError(f"Training assignment not found: {assignment_id}")

        modules = db.query(TrainingModule).filter(
            TrainingModule.training_id == assignment.training_id
        ).order_by(TrainingModule.order_index).all()

        progress: Dict = {
            row.module_id: row
            for row in db.query(ModuleProgress).filter(
                ModuleProgress.assignment_id == assignment.id
            ).all()
        }

        request = db.query(CertificateRequest).filter(
            CertificateRequest.assignment_id == assignment.id,
            CertificateRequest.status == CertificateRequestStatus.ISSUED
        ).first()

        return AssignmentProgressView(
            assignment_id=str(assignment.id),
            training_id=str(assignment.training_id),
            training_title=assignment.training.title,
            status=assignment.status,
            completed_module_count=assignment.completed_module_count,
            total_modules=len(modules),
            progress_percentage=assignment.progress_percentage,
            due_date=assignment.due_date,
            completed_at=assignment.completed_at,
            certificate_id=request.certificate_id if request else None,
            modules=[ProgressService.to_view(m, progress.get(m.id)) for m in modules],
        )

    def get_attempt_history(self, db: Session, quiz_assignment_id) -> AttemptHistory:
        """Get every attempt of a quiz assignment, oldest first"""
        assignment = db.get(
            QuizAssignment, to_uuid(quiz_assignment_id, "assignment"), populate_existing=True
        )
        if not assignment:
            raise NotFoundError(f"Quiz assignment not found: {quiz_assignment_id}")

        attempts = db.query(QuizAttempt).filter(
            QuizAttempt.assignment_id == assignment.id
        ).order_by(QuizAttempt.attempt_number).all()

        return AttemptHistory(
            assignment_id=str(assignment.id),
            status=assignment.status.value,
            attempts_used=assignment.attempts_used,
            best_score=assignment.best_score,
            passed=assignment.passed,
            attempts=[
                AttemptSummary(
                    attempt_id=str(a.id),
                    attempt_number=a.attempt_number,
                    status=a.status.value,
                    started_at=a.started_at,
                    submitted_at=a.submitted_at,
                    score_percent=a.score_percent,
                    passed=a.passed,
                    auto_submitted=a.auto_submitted,
                )
                for a in attempts
            ],
        )


# Global instance
analytics_service = AnalyticsService()
