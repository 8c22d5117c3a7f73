"""
Answer normalization - raw learner selections to canonical per-question sets
"""
import logging
from typing import Dict, FrozenSet, Optional

from training_engine.exceptions import InvalidAnswerError
from training_engine.schemas.quiz import QuizSnapshot, RawAnswers

logger = logging.getLogger(__name__)


def normalize_answers(
    snapshot: QuizSnapshot,
    raw_answers: Optional[RawAnswers]
) -> Dict[str, FrozenSet[str]]:
    """
    Convert raw selections into one option-id set per question

    Args:
        snapshot: Quiz snapshot the answers belong to
        raw_answers: {question_id: option_id | [option_id, ...] | None}

    Returns:
        {question_id: frozenset(option_ids)} covering every question of the
        quiz; unanswered questions map to an empty set

    Raises:
        InvalidAnswerError: unknown question, foreign option, or several
            options for a single-answer question. The whole submission is
            rejected.
    """
    questions = snapshot.question_map()
    raw_answers = raw_answers or {}

    unknown = sorted(str(q_id) for q_id in raw_answers if str(q_id) not in questions)
    if unknown:
        raise InvalidAnswerError(
            f"Answers reference unknown questions: {', '.join(unknown)}",
            details={"unknown_question_ids": unknown}
        )

    normalized = {q_id: frozenset() for q_id in questions}

    for q_id, raw in raw_answers.items():
        q_id = str(q_id)
        question = questions[q_id]

        if raw is None:
            continue
        if isinstance(raw, (list, tuple, set, frozenset)):
            selected = frozenset(str(option_id) for option_id in raw)
        else:
            selected = frozenset([str(raw)])

        if question.type.single_answer and len(selected) > 1:
            raise InvalidAnswerError(
                f"Question {q_id} accepts a single answer, got {len(selected)}",
                details={"question_id": q_id}
            )

        foreign = selected - question.option_ids
        if foreign:
            raise InvalidAnswerError(
                f"Question {q_id} has no options {', '.join(sorted(foreign))}",
                details={"question_id": q_id, "unknown_option_ids": sorted(foreign)}
            )

        normalized[q_id] = selected

    return normalized
