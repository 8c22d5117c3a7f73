import uuid

import pytest

from conftest import link_module, option_id, single
from training_engine.exceptions import NotFoundError
from training_engine.models.enums import ProgressStatus


def test_quiz_statistics_aggregate_assignments(services, db, publish_quiz):
    quiz, snapshot = publish_quiz(
        [single("Q1", "Right", points=1), single("Q2", "Right", points=3)],
        max_attempts=1,
        passing_score=70,
    )
    right = {q.id: option_id(snapshot, i, "Right") for i, q in enumerate(snapshot.questions)}

    passing = services.trainings.assign_quiz(db, quiz.id, uuid.uuid4())
    failing = services.trainings.assign_quiz(db, quiz.id, uuid.uuid4())
    services.trainings.assign_quiz(db, quiz.id, uuid.uuid4())

    started = services.attempts.start_attempt(db, passing.id)
    services.attempts.submit(db, started.attempt_id, right)
    started = services.attempts.start_attempt(db, failing.id)
    services.attempts.submit(db, started.attempt_id, {snapshot.questions[0].id: right[snapshot.questions[0].id]})

    stats = services.analytics.get_quiz_statistics(db, quiz.id)

    assert stats.total_assignments == 3
    assert stats.completed_count == 1
    assert stats.passed_count == 1
    assert stats.failed_count == 1
    assert stats.total_attempts == 2
    assert stats.average_best_score == 62.5  # (100 + 25) / 2
    assert stats.total_questions == 2
    assert stats.total_points == 4


def test_progress_view_of_fresh_assignment(services, db, build_training):
    training = build_training([link_module("A"), link_module("B", mandatory=False)])
    assignment = services.trainings.assign_training(db, training.id, uuid.uuid4())

    view = services.analytics.get_assignment_progress(db, assignment.id)

    assert view.status == ProgressStatus.NOT_STARTED
    assert view.total_modules == 2
    assert view.progress_percentage == 0
    assert view.certificate_id is None
    assert [m.title for m in view.modules] == ["A", "B"]
    assert [m.is_mandatory for m in view.modules] == [True, False]


def test_unknown_ids_are_not_found(services, db):
    with pytest.raises(NotFoundError):
        services.analytics.get_quiz_statistics(db, uuid.uuid4())
    with pytest.raises(NotFoundError):
        services.analytics.get_assignment_progress(db, uuid.uuid4())
    with pytest.raises(NotFoundError):
        services.analytics.get_attempt_history(db, "garbage")
