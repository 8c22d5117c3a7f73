"""
Quiz store - authoring, publishing and immutable snapshots
"""
import logging

from sqlalchemy.orm import Session

from training_engine.config import settings
from training_engine.exceptions import InvalidTransitionError, NotFoundError
from training_engine.models import Quiz, QuizOption, QuizQuestion
from training_engine.models.enums import QuizStatus
from training_engine.schemas.quiz import (
    OptionSnapshot, QuestionCreate, QuestionSnapshot, QuizCreate, QuizSnapshot
)
from training_engine.services.grading_service import GradingService, grading_service
from training_engine.utils.cache import CacheService, cache_service
from training_engine.utils.clock import Clock, system_clock
from training_engine.utils.ids import to_uuid

logger = logging.getLogger(__name__)


class QuizService:
    """
    Service for quiz authoring and snapshot retrieval

    A quiz is editable only while DRAFT. Publishing validates it with the
    grading rules and freezes a QuizSnapshot onto the row; attempts copy that
    snapshot, so later changes can never alter historical grading.
    """

    def __init__(
        self,
        cache: CacheService = cache_service,
        grader: GradingService = grading_service,
        clock: Clock = system_clock
    ):
        self.cache = cache
        self.grader = grader
        self.clock = clock

    def create_quiz(self, db: Session, request: QuizCreate) -> Quiz:
        """Create a DRAFT quiz with its questions"""
        quiz = Quiz(
            title=request.title,
            description=request.description,
            passing_score=(
                request.passing_score if request.passing_score is not None
                else settings.DEFAULT_PASSING_SCORE
            ),
            duration_minutes=request.duration_minutes or settings.DEFAULT_DURATION_MINUTES,
            max_attempts=request.max_attempts,
            shuffle_questions=request.shuffle_questions,
            show_correct_answers=request.show_correct_answers,
            status=QuizStatus.DRAFT,
        )
        for order_index, question in enumerate(request.questions):
            quiz.questions.append(self._build_question(question, order_index))

        db.add(quiz)
        db.commit()

        logger.info(f"Created quiz: {quiz.title} with {len(request.questions)} questions")
        return quiz

    def add_question(self, db: Session, quiz_id, request: QuestionCreate) -> Quiz:
        """Append a question to a DRAFT quiz"""
        quiz = self._get_draft(db, quiz_id)
        next_index = max((q.order_index for q in quiz.questions), default=-1) + 1
        quiz.questions.append(self._build_question(request, next_index))
        db.commit()
        return quiz

    def remove_question(self, db: Session, quiz_id, question_id) -> Quiz:
        """Delete a question from a DRAFT quiz"""
        quiz = self._get_draft(db, quiz_id)
        question_id = to_uuid(question_id, "question")

        question = next((q for q in quiz.questions if q.id == question_id), None)
        if question is None:
            raise NotFoundError(f"Question {question_id} does not belong to quiz {quiz.id}")

        quiz.questions.remove(question)
        db.commit()
        logger.info(f"Deleted question {question_id} from quiz {quiz.id}")
        return quiz

    def publish_quiz(self, db: Session, quiz_id) -> QuizSnapshot:
        """
        Validate and freeze a DRAFT quiz

        Raises:
            InvalidQuizError: no questions, zero points, or bad correct options
            InvalidTransitionError: quiz is not DRAFT
        """
        quiz = self._get_draft(db, quiz_id)
        snapshot = self.build_snapshot(quiz)
        self.grader.validate_quiz(snapshot)

        payload = snapshot.model_dump(mode="json")
        quiz.snapshot = payload
        quiz.snapshot_hash = self.cache.generate_snapshot_hash(payload)
        quiz.status = QuizStatus.PUBLISHED
        quiz.published_at = self.clock.now()
        db.commit()

        self.cache.set(self.cache.generate_snapshot_key(str(quiz.id)), payload)
        logger.info(f"Published quiz: {quiz.title} ({quiz.snapshot_hash[:12]})")
        return snapshot

    def archive_quiz(self, db: Session, quiz_id) -> Quiz:
        """Retire a quiz; existing attempts keep grading against their snapshots"""
        quiz = self.get_quiz(db, quiz_id)
        quiz.status = QuizStatus.ARCHIVED
        db.commit()

        self.cache.clear_quiz_cache(str(quiz.id))
        logger.info(f"Archived quiz: {quiz.title}")
        return quiz

    def get_quiz(self, db: Session, quiz_id) -> Quiz:
        quiz = db.get(Quiz, to_uuid(quiz_id, "quiz"))
        if not quiz:
            raise NotFoundError(f"Quiz not found with id: {quiz_id}")
        return quiz

    def get_snapshot(self, db: Session, quiz_id) -> QuizSnapshot:
        """
        Read-through fetch of the published snapshot

        Raises:
            NotFoundError: unknown quiz
            InvalidTransitionError: quiz is not PUBLISHED
        """
        quiz_id = to_uuid(quiz_id, "quiz")
        cache_key = self.cache.generate_snapshot_key(str(quiz_id))

        cached = self.cache.get(cache_key)
        if cached:
            return QuizSnapshot.model_validate(cached)

        quiz = self.get_quiz(db, quiz_id)
        if quiz.status != QuizStatus.PUBLISHED or not quiz.snapshot:
            raise InvalidTransitionError(f"Quiz {quiz_id} is not published")

        self.cache.set(cache_key, quiz.snapshot)
        return QuizSnapshot.model_validate(quiz.snapshot)

    def build_snapshot(self, quiz: Quiz) -> QuizSnapshot:
        return QuizSnapshot(
            quiz_id=str(quiz.id),
            title=quiz.title,
            passing_score=quiz.passing_score,
            duration_minutes=quiz.duration_minutes,
            max_attempts=quiz.max_attempts,
            shuffle_questions=quiz.shuffle_questions,
            show_correct_answers=quiz.show_correct_answers,
            questions=[
                QuestionSnapshot(
                    id=str(question.id),
                    text=question.question_text,
                    type=question.type,
                    points=question.points,
                    options=[
                        OptionSnapshot(
                            id=str(option.id),
                            text=option.option_text,
                            is_correct=option.is_correct,
                        )
                        for option in question.options
                    ],
                )
                for question in quiz.questions
            ],
        )

    def _get_draft(self, db: Session, quiz_id) -> Quiz:
        quiz = self.get_quiz(db, quiz_id)
        if quiz.status != QuizStatus.DRAFT:
            raise InvalidTransitionError(
                f"Quiz {quiz.id} is {quiz.status.value}; only DRAFT quizzes can be edited"
            )
        return quiz

    @staticmethod
    def _build_question(request: QuestionCreate, order_index: int) -> QuizQuestion:
        question = QuizQuestion(
            question_text=request.question_text,
            type=request.type,
            points=request.points,
            order_index=order_index,
            explanation=request.explanation,
        )
        for option_index, option in enumerate(request.options):
            question.options.append(
                QuizOption(
                    option_text=option.option_text,
                    is_correct=option.is_correct,
                    order_index=option_index,
                )
            )
        return question
