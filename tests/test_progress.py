import re
import threading
import uuid
from datetime import date

import pytest

from conftest import link_module, option_id, quiz_module, single
from training_engine.exceptions import InvalidTransitionError, NotFoundError
from training_engine.models import Certificate, CertificateRequest
from training_engine.models.enums import CertificateRequestStatus, MaterialType, ProgressStatus
from training_engine.schemas.quiz import QuizCreate
from training_engine.schemas.training import ModuleCreate
from training_engine.services.certificate_service import DatabaseCertificateIssuer


LEARNER = uuid.UUID("00000000-0000-0000-0000-0000000000b2")


def _walk(services, db, assignment, module):
    services.progress.start_module(db, assignment.id, module.id)
    return services.progress.complete_module(db, assignment.id, module.id)


def _request(db, assignment):
    return db.query(CertificateRequest).filter(
        CertificateRequest.assignment_id == assignment.id
    ).populate_existing().one()


@pytest.fixture
def three_module_assignment(services, db, build_training):
    training = build_training([
        link_module("Policy"),
        link_module("Handbook"),
        link_module("Further reading", mandatory=False),
    ])
    assignment = services.trainings.assign_training(db, training.id, LEARNER)
    return training, assignment


def test_mandatory_modules_gate_completion(services, db, issuer, three_module_assignment):
    training, assignment = three_module_assignment
    policy, handbook, optional = training.modules

    first = _walk(services, db, assignment, policy)
    assert first.assignment.status == ProgressStatus.IN_PROGRESS
    assert first.assignment.progress_percentage == 33

    second = _walk(services, db, assignment, handbook)

    assert second.assignment.status == ProgressStatus.COMPLETED
    assert second.assignment.completion_edge is True
    assert second.assignment.completed_module_count == 2
    assert second.assignment.progress_percentage == 66
    assert issuer.calls == [str(assignment.id)]

    view = services.analytics.get_assignment_progress(db, assignment.id)
    assert view.certificate_id == "CERT-1"
    assert [m.status for m in view.modules] == [
        ProgressStatus.COMPLETED, ProgressStatus.COMPLETED, ProgressStatus.NOT_STARTED
    ]


def test_start_module_moves_assignment_into_progress(services, db, clock, three_module_assignment):
    training, assignment = three_module_assignment

    update = services.progress.start_module(db, assignment.id, training.modules[0].id)

    assert update.changed is True
    assert update.module.status == ProgressStatus.IN_PROGRESS
    assert update.assignment.status == ProgressStatus.IN_PROGRESS
    db.refresh(assignment)
    assert assignment.started_at == clock.now()


def test_restarting_a_module_is_a_noop(services, db, three_module_assignment):
    training, assignment = three_module_assignment
    module = training.modules[0]
    _walk(services, db, assignment, module)

    update = services.progress.start_module(db, assignment.id, module.id)

    assert update.changed is False
    assert update.module.status == ProgressStatus.COMPLETED


def test_completing_unstarted_module_is_rejected(services, db, three_module_assignment):
    training, assignment = three_module_assignment

    with pytest.raises(InvalidTransitionError):
        services.progress.complete_module(db, assignment.id, training.modules[0].id)


def test_complete_module_stores_notes_and_time(services, db, three_module_assignment):
    training, assignment = three_module_assignment
    module = training.modules[0]
    services.progress.start_module(db, assignment.id, module.id)

    update = services.progress.complete_module(
        db, assignment.id, module.id, notes="Read twice", time_spent_minutes=12
    )

    assert update.module.notes == "Read twice"
    assert update.module.time_spent_minutes == 12


def test_certificate_requested_only_on_first_completion(services, db, issuer, three_module_assignment):
    training, assignment = three_module_assignment
    for module in training.modules[:2]:
        _walk(services, db, assignment, module)

    again = services.progress.complete_module(db, assignment.id, training.modules[0].id)
    _walk(services, db, assignment, training.modules[2])
    recomputed = services.completion.recompute(db, assignment.id)

    assert again.changed is False
    assert recomputed.status == ProgressStatus.COMPLETED
    assert recomputed.completion_edge is False
    assert recomputed.certificate_requested is False
    assert recomputed.progress_percentage == 100
    assert len(issuer.calls) == 1


def test_module_of_another_training_is_not_found(services, db, build_training, three_module_assignment):
    _, assignment = three_module_assignment
    other = build_training([link_module("Elsewhere")], title="Other")

    with pytest.raises(NotFoundError):
        services.progress.start_module(db, assignment.id, other.modules[0].id)


def test_training_without_mandatory_modules_needs_every_module(services, db, build_training):
    training = build_training([
        link_module("One", mandatory=False),
        link_module("Two", mandatory=False),
    ])
    assignment = services.trainings.assign_training(db, training.id, LEARNER)

    assert _walk(services, db, assignment, training.modules[0]).assignment.status == ProgressStatus.IN_PROGRESS
    assert _walk(services, db, assignment, training.modules[1]).assignment.status == ProgressStatus.COMPLETED


def test_module_added_after_assignment_is_counted(services, db, build_training):
    training = build_training([link_module("First")])
    assignment = services.trainings.assign_training(db, training.id, LEARNER)
    added = services.trainings.add_module(
        db, training.id, ModuleCreate(title="Late addition", order_index=5)
    )

    update = _walk(services, db, assignment, training.modules[0])
    assert update.assignment.status == ProgressStatus.IN_PROGRESS
    assert update.assignment.completed_module_count == 1

    assert _walk(services, db, assignment, added).assignment.status == ProgressStatus.COMPLETED


def test_duplicate_training_assignment_is_rejected(services, db, three_module_assignment):
    training, _ = three_module_assignment

    with pytest.raises(InvalidTransitionError):
        services.trainings.assign_training(db, training.id, LEARNER)


def test_issuer_failure_keeps_completion_and_retries(services, db, issuer, three_module_assignment):
    training, assignment = three_module_assignment
    issuer.fail_times = 1

    for module in training.modules[:2]:
        update = _walk(services, db, assignment, module)

    assert update.assignment.status == ProgressStatus.COMPLETED
    request = _request(db, assignment)
    assert request.status == CertificateRequestStatus.PENDING
    assert request.attempts == 1
    assert request.last_error == "issuer unavailable"

    assert services.outbox.dispatch_pending(db) == ["CERT-2"]
    request = _request(db, assignment)
    assert request.status == CertificateRequestStatus.ISSUED
    assert request.attempts == 2


def test_request_gives_up_after_max_retries(services, db, issuer, three_module_assignment):
    training, assignment = three_module_assignment
    issuer.fail_times = 100
    for module in training.modules[:2]:
        _walk(services, db, assignment, module)

    for _ in range(services.outbox.max_retries - 1):
        services.outbox.dispatch(db, assignment.id)

    assert _request(db, assignment).status == CertificateRequestStatus.FAILED
    calls = len(issuer.calls)
    assert services.outbox.dispatch(db, assignment.id) is None
    assert len(issuer.calls) == calls

    issuer.fail_times = 0
    assert services.outbox.retry_failed(db, assignment.id) is not None
    assert _request(db, assignment).status == CertificateRequestStatus.ISSUED


def test_overlapping_dispatch_calls_issuer_once(
    services, session_factory, db, issuer, three_module_assignment
):
    training, assignment = three_module_assignment
    overlapping = []

    def recover_meanwhile():
        other = session_factory()
        try:
            overlapping.append(services.outbox.dispatch_pending(other))
            overlapping.append(services.outbox.dispatch(other, assignment.id))
        finally:
            other.close()

    issuer.during_issue = recover_meanwhile
    for module in training.modules[:2]:
        _walk(services, db, assignment, module)

    assert issuer.calls == [str(assignment.id)]
    assert overlapping == [[], None]
    request = _request(db, assignment)
    assert request.status == CertificateRequestStatus.ISSUED
    assert request.attempts == 1
    assert request.claimed_at is None


def test_abandoned_dispatch_claim_is_taken_over(services, db, clock, issuer, three_module_assignment):
    training, assignment = three_module_assignment
    issuer.fail_times = 1
    for module in training.modules[:2]:
        _walk(services, db, assignment, module)

    # a dispatcher claimed the row and died before recording the outcome
    db.query(CertificateRequest).filter(
        CertificateRequest.assignment_id == assignment.id
    ).update(
        {
            CertificateRequest.status: CertificateRequestStatus.DISPATCHING,
            CertificateRequest.claimed_at: clock.now(),
        },
        synchronize_session=False
    )
    db.commit()

    assert services.outbox.dispatch_pending(db) == []
    assert len(issuer.calls) == 1

    clock.advance(seconds=services.outbox.claim_timeout_seconds + 1)
    assert services.outbox.dispatch_pending(db) == ["CERT-2"]
    assert _request(db, assignment).status == CertificateRequestStatus.ISSUED


def test_concurrent_module_completions_issue_one_certificate(
    services, session_factory, db, issuer, three_module_assignment
):
    training, assignment = three_module_assignment
    for module in training.modules[:2]:
        services.progress.start_module(db, assignment.id, module.id)

    barrier = threading.Barrier(2)
    errors = []

    def complete(module_id):
        session = session_factory()
        try:
            barrier.wait()
            services.progress.complete_module(session, assignment.id, module_id)
        except Exception as e:
            errors.append(e)
        finally:
            session.close()

    threads = [
        threading.Thread(target=complete, args=(module.id,)) for module in training.modules[:2]
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert issuer.calls == [str(assignment.id)]
    db.refresh(assignment)
    assert assignment.status == ProgressStatus.COMPLETED


@pytest.fixture
def quiz_training(services, db, build_training, publish_quiz):
    quiz, snapshot = publish_quiz(
        [single("Q1", "Right"), single("Q2", "Right")], passing_score=100, max_attempts=2
    )
    training = build_training([link_module("Intro"), quiz_module("Exam", quiz.id)])
    assignment = services.trainings.assign_training(db, training.id, LEARNER)
    quiz_assignment = services.trainings.get_quiz_assignment_for_module(
        db, assignment.id, training.modules[1].id
    )
    return training, assignment, quiz_assignment, snapshot


def _all_right(snapshot):
    return {q.id: option_id(snapshot, i, "Right") for i, q in enumerate(snapshot.questions)}


def test_quiz_module_cannot_be_completed_by_hand(services, db, quiz_training):
    training, assignment, _, _ = quiz_training
    services.progress.start_module(db, assignment.id, training.modules[1].id)

    with pytest.raises(InvalidTransitionError):
        services.progress.complete_module(db, assignment.id, training.modules[1].id)


def test_passing_module_quiz_completes_training(services, db, issuer, quiz_training):
    training, assignment, quiz_assignment, snapshot = quiz_training
    _walk(services, db, assignment, training.modules[0])

    started = services.attempts.start_attempt(db, quiz_assignment.id)
    view = services.analytics.get_assignment_progress(db, assignment.id)
    assert view.modules[1].status == ProgressStatus.IN_PROGRESS

    services.attempts.submit(db, started.attempt_id, _all_right(snapshot))

    view = services.analytics.get_assignment_progress(db, assignment.id)
    assert view.status == ProgressStatus.COMPLETED
    assert view.modules[1].status == ProgressStatus.COMPLETED
    assert issuer.calls == [str(assignment.id)]


def test_failing_module_quiz_leaves_module_in_progress(services, db, issuer, quiz_training):
    training, assignment, quiz_assignment, _ = quiz_training
    _walk(services, db, assignment, training.modules[0])

    started = services.attempts.start_attempt(db, quiz_assignment.id)
    services.attempts.submit(db, started.attempt_id, {})

    view = services.analytics.get_assignment_progress(db, assignment.id)
    assert view.status == ProgressStatus.IN_PROGRESS
    assert view.modules[1].status == ProgressStatus.IN_PROGRESS
    assert issuer.calls == []


def test_database_issuer_writes_one_certificate(services, session_factory, db, clock, build_training):
    training = build_training([link_module("Only")], title="Onboarding", category="certification")
    assignment = services.trainings.assign_training(db, training.id, LEARNER)
    real_issuer = DatabaseCertificateIssuer(session_factory, clock)

    with pytest.raises(InvalidTransitionError):
        real_issuer.issue(str(assignment.id))

    services.progress.start_module(db, assignment.id, training.modules[0].id)
    services.progress.complete_module(db, assignment.id, training.modules[0].id)

    number = real_issuer.issue(str(assignment.id))

    assert re.fullmatch(r"RMP-2026-ONB-[0-9A-F]{8}", number)
    assert real_issuer.issue(str(assignment.id)) == number


def test_certification_expires_after_validity_period(session_factory, db, clock, services, build_training):
    training = build_training([link_module("Only")], category="CERTIFICATION")
    assignment = services.trainings.assign_training(db, training.id, LEARNER)
    _walk(services, db, assignment, training.modules[0])

    DatabaseCertificateIssuer(session_factory, clock).issue(str(assignment.id))

    certificate = db.query(Certificate).filter(Certificate.assignment_id == assignment.id).one()
    assert certificate.issued_date == date(2026, 1, 5)
    assert certificate.expiry_date == date(2028, 1, 5)


def test_quiz_module_added_after_assignment_can_be_passed(
    services, db, issuer, build_training, publish_quiz
):
    quiz, snapshot = publish_quiz([single("Q1", "Right")])
    training = build_training([link_module("Intro")])
    assignment = services.trainings.assign_training(db, training.id, LEARNER)

    exam = services.trainings.add_module(
        db,
        training.id,
        ModuleCreate(title="Exam", order_index=1, material_type=MaterialType.QUIZ, quiz_id=quiz.id),
    )
    quiz_assignment = services.trainings.get_quiz_assignment_for_module(db, assignment.id, exam.id)
    assert quiz_assignment.learner_id == LEARNER

    assert _walk(services, db, assignment, training.modules[0]).assignment.status == ProgressStatus.IN_PROGRESS

    started = services.attempts.start_attempt(db, quiz_assignment.id)
    services.attempts.submit(db, started.attempt_id, _all_right(snapshot))

    view = services.analytics.get_assignment_progress(db, assignment.id)
    assert view.status == ProgressStatus.COMPLETED
    assert [m.status for m in view.modules] == [ProgressStatus.COMPLETED, ProgressStatus.COMPLETED]
    assert issuer.calls == [str(assignment.id)]


def test_quiz_module_is_not_added_to_completed_assignments(services, db, build_training, publish_quiz):
    quiz, _ = publish_quiz()
    training = build_training([link_module("Intro")])
    assignment = services.trainings.assign_training(db, training.id, LEARNER)
    _walk(services, db, assignment, training.modules[0])

    exam = services.trainings.add_module(
        db,
        training.id,
        ModuleCreate(title="Exam", order_index=1, material_type=MaterialType.QUIZ, quiz_id=quiz.id),
    )

    with pytest.raises(NotFoundError):
        services.trainings.get_quiz_assignment_for_module(db, assignment.id, exam.id)


def test_quiz_module_needs_a_published_quiz(services, db, build_training):
    draft = services.quizzes.create_quiz(db, QuizCreate(title="Draft", questions=[single("Q1", "Right")]))
    training = build_training([link_module("Intro")])

    with pytest.raises(InvalidTransitionError):
        services.trainings.add_module(
            db,
            training.id,
            ModuleCreate(title="Exam", order_index=1, material_type=MaterialType.QUIZ, quiz_id=draft.id),
        )

    db.refresh(training)
    assert [m.title for m in training.modules] == ["Intro"]
