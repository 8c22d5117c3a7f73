import pytest

from conftest import multiple, single
from training_engine.exceptions import InvalidQuizError, InvalidTransitionError
from training_engine.models.enums import QuestionType, QuizStatus
from training_engine.schemas.quiz import OptionCreate, QuestionCreate, QuizCreate


def test_publish_freezes_snapshot(services, db, publish_quiz):
    quiz, snapshot = publish_quiz(
        [single("Q1", "Right", points=2), multiple("Q2", ["A", "C"], ["B"], points=3)],
        passing_score=80,
        duration_minutes=15,
        max_attempts=2,
    )

    assert quiz.status == QuizStatus.PUBLISHED
    assert quiz.published_at is not None
    assert len(quiz.snapshot_hash) == 64
    assert snapshot.total_points == 5
    assert snapshot.passing_score == 80
    assert snapshot.max_attempts == 2
    assert [q.text for q in snapshot.questions] == ["Q1", "Q2"]
    assert services.quizzes.get_snapshot(db, quiz.id) == snapshot


def test_create_quiz_applies_defaults(services, db):
    quiz = services.quizzes.create_quiz(db, QuizCreate(title="Defaults"))

    assert quiz.status == QuizStatus.DRAFT
    assert quiz.passing_score == 70
    assert quiz.duration_minutes == 30
    assert quiz.max_attempts is None


def test_publish_rejects_quiz_without_questions(services, db):
    quiz = services.quizzes.create_quiz(db, QuizCreate(title="Empty"))

    with pytest.raises(InvalidQuizError):
        services.quizzes.publish_quiz(db, quiz.id)

    assert services.quizzes.get_quiz(db, quiz.id).status == QuizStatus.DRAFT


def test_publish_rejects_question_without_correct_option(services, db):
    question = QuestionCreate(
        question_text="No answer",
        type=QuestionType.SINGLE_CHOICE,
        options=[OptionCreate(option_text="a"), OptionCreate(option_text="b")],
    )
    quiz = services.quizzes.create_quiz(db, QuizCreate(title="Broken", questions=[question]))

    with pytest.raises(InvalidQuizError):
        services.quizzes.publish_quiz(db, quiz.id)


def test_published_quiz_cannot_be_edited(services, db, publish_quiz):
    quiz, _ = publish_quiz()

    with pytest.raises(InvalidTransitionError):
        services.quizzes.add_question(db, quiz.id, single("Q2", "Yes"))

    with pytest.raises(InvalidTransitionError):
        services.quizzes.publish_quiz(db, quiz.id)


def test_draft_questions_can_be_added_and_removed(services, db):
    quiz = services.quizzes.create_quiz(
        db, QuizCreate(title="Draft", questions=[single("Q1", "Yes")])
    )

    quiz = services.quizzes.add_question(db, quiz.id, single("Q2", "Yes"))
    assert [q.order_index for q in quiz.questions] == [0, 1]

    quiz = services.quizzes.remove_question(db, quiz.id, quiz.questions[0].id)
    assert [q.question_text for q in quiz.questions] == ["Q2"]


def test_unpublished_quiz_has_no_snapshot(services, db):
    quiz = services.quizzes.create_quiz(
        db, QuizCreate(title="Draft", questions=[single("Q1", "Yes")])
    )

    with pytest.raises(InvalidTransitionError):
        services.quizzes.get_snapshot(db, quiz.id)


def test_archived_quiz_cannot_be_assigned(services, db, publish_quiz):
    quiz, _ = publish_quiz()
    services.quizzes.archive_quiz(db, quiz.id)

    with pytest.raises(InvalidTransitionError):
        services.trainings.assign_quiz(db, quiz.id, "00000000-0000-0000-0000-000000000001")
