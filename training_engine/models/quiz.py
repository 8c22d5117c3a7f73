"""
Quiz, question and option models
"""
import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, Text, Uuid, func
)
from sqlalchemy.orm import relationship

from training_engine.database import Base, JSONType
from training_engine.models.enums import QuestionType, QuizStatus


class Quiz(Base):
    """
    Quizzes table - editable while DRAFT, frozen into a snapshot when published
    """
    __tablename__ = "quizzes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    passing_score = Column(Integer, nullable=False, default=70)  # percent
    duration_minutes = Column(Integer, nullable=False, default=30)
    max_attempts = Column(Integer)  # NULL = unlimited
    shuffle_questions = Column(Boolean, nullable=False, default=False)
    show_correct_answers = Column(Boolean, nullable=False, default=True)
    status = Column(
        Enum(QuizStatus, native_enum=False, length=20),
        nullable=False,
        default=QuizStatus.DRAFT
    )
    snapshot = Column(JSONType)  # Frozen grading content, set on publish
    snapshot_hash = Column(String(64), index=True)
    published_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())

    questions = relationship(
        "QuizQuestion",
        back_populates="quiz",
        order_by="QuizQuestion.order_index",
        cascade="all, delete-orphan"
    )

    @property
    def total_points(self) -> int:
        return sum(q.points for q in self.questions)

    def __repr__(self):
        return f"<Quiz(id={self.id}, title={self.title}, status={self.status})>"


class QuizQuestion(Base):
    """Questions table - one row per question, ordered within its quiz"""
    __tablename__ = "quiz_questions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    quiz_id = Column(Uuid, ForeignKey("quizzes.id"), nullable=False, index=True)
    question_text = Column(Text, nullable=False)
    type = Column(Enum(QuestionType, native_enum=False, length=20), nullable=False)
    points = Column(Integer, nullable=False, default=1)
    order_index = Column(Integer, nullable=False, default=0)
    explanation = Column(Text)

    quiz = relationship("Quiz", back_populates="questions")
    options = relationship(
        "QuizOption",
        back_populates="question",
        order_by="QuizOption.order_index",
        cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<QuizQuestion(id={self.id}, type={self.type}, points={self.points})>"


class QuizOption(Base):
    """Options table - answer choices of a question"""
    __tablename__ = "quiz_options"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    question_id = Column(Uuid, ForeignKey("quiz_questions.id"), nullable=False, index=True)
    option_text = Column(Text, nullable=False)
    is_correct = Column(Boolean, nullable=False, default=False)
    order_index = Column(Integer, nullable=False, default=0)

    question = relationship("QuizQuestion", back_populates="options")

    def __repr__(self):
        return f"<QuizOption(id={self.id}, is_correct={self.is_correct})>"
