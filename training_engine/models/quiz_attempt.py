"""
QuizAssignment and QuizAttempt models - attempts, answers and grading results
"""
import uuid

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Enum, ForeignKey, Index, Integer, Uuid, func, text
)
from sqlalchemy.orm import relationship

from training_engine.database import Base, JSONType
from training_engine.models.enums import AttemptStatus, QuizAssignmentStatus


class QuizAssignment(Base):
    """
    Quiz assignments table - one learner's entitlement to attempt a quiz

    Linked to a training assignment and module when the quiz backs a QUIZ module.
    """
    __tablename__ = "quiz_assignments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    learner_id = Column(Uuid, nullable=False, index=True)
    quiz_id = Column(Uuid, ForeignKey("quizzes.id"), nullable=False, index=True)
    training_assignment_id = Column(Uuid, ForeignKey("training_assignments.id"), index=True)
    module_id = Column(Uuid, ForeignKey("training_modules.id"))
    due_date = Column(Date)
    status = Column(
        Enum(QuizAssignmentStatus, native_enum=False, length=20),
        nullable=False,
        default=QuizAssignmentStatus.NOT_STARTED
    )
    attempts_used = Column(Integer, nullable=False, default=0)
    best_score = Column(Integer)  # percent, NULL until first submission
    passed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    version = Column(Integer, nullable=False)

    quiz = relationship("Quiz")
    training_assignment = relationship("TrainingAssignment")
    attempts = relationship(
        "QuizAttempt",
        back_populates="assignment",
        order_by="QuizAttempt.attempt_number"
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return (
            f"<QuizAssignment(id={self.id}, status={self.status}, "
            f"attempts_used={self.attempts_used}, best_score={self.best_score})>"
        )


class QuizAttempt(Base):
    """
    Quiz attempts table - one timed pass over a frozen quiz snapshot

    At most one IN_PROGRESS attempt exists per assignment (partial unique index).
    """
    __tablename__ = "quiz_attempts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    assignment_id = Column(Uuid, ForeignKey("quiz_assignments.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    started_at = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)  # Copied from the quiz at start
    quiz_snapshot = Column(JSONType, nullable=False)
    answers = Column(JSONType)  # Recorded raw answers {question_id: option_id | [option_id]}
    status = Column(
        Enum(AttemptStatus, native_enum=False, length=20),
        nullable=False,
        default=AttemptStatus.IN_PROGRESS
    )
    score = Column(Integer)  # earned points
    total_points = Column(Integer)
    score_percent = Column(Integer)
    passed = Column(Boolean)
    question_results = Column(JSONType)  # Per-question correctness and points
    submitted_at = Column(DateTime)
    time_spent_seconds = Column(Integer)
    auto_submitted = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False)

    assignment = relationship("QuizAssignment", back_populates="attempts")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index(
            "uq_quiz_attempts_one_in_progress",
            "assignment_id",
            unique=True,
            sqlite_where=text("status = 'IN_PROGRESS'"),
            postgresql_where=text("status = 'IN_PROGRESS'"),
        ),
    )

    def __repr__(self):
        return (
            f"<QuizAttempt(id={self.id}, number={self.attempt_number}, "
            f"status={self.status}, score={self.score_percent})>"
        )
