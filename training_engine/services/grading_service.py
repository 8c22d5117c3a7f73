"""
Quiz grading service
All question types are graded by exact set match; no partial credit.
"""
import logging
from typing import Dict, FrozenSet

from training_engine.exceptions import InvalidQuizError
from training_engine.models.enums import QuestionType
from training_engine.schemas.attempt import AttemptResult, QuestionGrade
from training_engine.schemas.quiz import QuestionSnapshot, QuizSnapshot

logger = logging.getLogger(__name__)


class GradingService:
    """
    Service for grading quiz submissions

    Strategy:
    - SINGLE_CHOICE / TRUE_FALSE / MULTIPLE_CHOICE: selected set must equal
      the correct set exactly. A subset, a superset or a blank answer earns
      nothing.
    - Percent score is rounded half-up to an integer.

    Grading is pure: the same snapshot and answers always produce an equal
    AttemptResult.
    """

    def validate_quiz(self, snapshot: QuizSnapshot) -> None:
        """
        Check that a quiz can be graded

        Raises:
            InvalidQuizError: no questions, zero total points, or a question
                whose correct-option count does not fit its type
        """
        if not snapshot.questions:
            raise InvalidQuizError(f"Quiz {snapshot.quiz_id} has no questions")

        for question in snapshot.questions:
            correct = len(question.correct_option_ids)
            if correct == 0:
                raise InvalidQuizError(
                    f"Question {question.id} has no correct option",
                    details={"question_id": question.id}
                )
            if question.type != QuestionType.MULTIPLE_CHOICE and correct != 1:
                raise InvalidQuizError(
                    f"{question.type.value} question {question.id} must have exactly one correct option",
                    details={"question_id": question.id}
                )

        if snapshot.total_points <= 0:
            raise InvalidQuizError(f"Quiz {snapshot.quiz_id} has zero total points")

    def grade_question(
        self,
        question: QuestionSnapshot,
        selected: FrozenSet[str]
    ) -> QuestionGrade:
        """
        Grade one question with exact set match

        Args:
            question: Question snapshot
            selected: Normalized selected option ids

        Returns:
            QuestionGrade with is_correct and earned points
        """
        correct_set = question.correct_option_ids
        is_correct = bool(correct_set) and frozenset(selected) == correct_set

        return QuestionGrade(
            question_id=question.id,
            is_correct=is_correct,
            earned_points=question.points if is_correct else 0,
            max_points=question.points,
            selected_option_ids=tuple(sorted(selected)),
            correct_option_ids=tuple(sorted(correct_set)),
        )

    def grade_attempt(
        self,
        snapshot: QuizSnapshot,
        answers: Dict[str, FrozenSet[str]]
    ) -> AttemptResult:
        """
        Grade a complete attempt

        Args:
            snapshot: Quiz snapshot captured when the attempt started
            answers: Output of normalize_answers {question_id: option_ids}

        Returns:
            AttemptResult with score, percent and pass/fail verdict

        Raises:
            InvalidQuizError: quiz is not gradeable
        """
        self.validate_quiz(snapshot)

        grades = tuple(
            self.grade_question(question, answers.get(question.id, frozenset()))
            for question in snapshot.questions
        )

        total_points = sum(g.max_points for g in grades)
        earned_points = sum(g.earned_points for g in grades)
        score_percent = self._percent(earned_points, total_points)

        result = AttemptResult(
            score=earned_points,
            total_points=total_points,
            score_percent=score_percent,
            passed=score_percent >= snapshot.passing_score,
            passing_score=snapshot.passing_score,
            questions=grades,
        )

        logger.info(
            f"Quiz {snapshot.quiz_id} graded: {earned_points}/{total_points} "
            f"({score_percent}%), passed={result.passed}"
        )

        return result

    @staticmethod
    def _percent(earned: int, total: int) -> int:
        """round(100 * earned / total), halves rounded up, integer-exact"""
        return (200 * earned + total) // (2 * total)


# Global instance
grading_service = GradingService()
