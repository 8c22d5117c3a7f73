"""
Quiz attempt lifecycle
start -> IN_PROGRESS -> SUBMITTED (manual submit or auto-submit on timeout)
"""
import logging
import random
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from training_engine.config import settings
from training_engine.database import SessionLocal, session_scope
from training_engine.exceptions import (
    AttemptLimitExceededError, ConcurrentUpdateError, InvalidTransitionError,
    NotFoundError, TrainingEngineError
)
from training_engine.models import QuizAssignment, QuizAttempt
from training_engine.models.enums import AttemptStatus, QuizAssignmentStatus
from training_engine.schemas.attempt import (
    AttemptResult, AttemptStarted, QuestionGrade, SubmissionOutcome
)
from training_engine.schemas.quiz import (
    LearnerOptionView, LearnerQuestionView, LearnerQuizView, QuizSnapshot, RawAnswers
)
from training_engine.services.answer_normalizer import normalize_answers
from training_engine.services.grading_service import GradingService, grading_service
from training_engine.services.progress_service import ProgressService
from training_engine.services.quiz_service import QuizService
from training_engine.services.timeout_scheduler import NullTimeoutScheduler, TimeoutScheduler
from training_engine.utils.clock import Clock, system_clock
from training_engine.utils.ids import to_uuid
from training_engine.utils.locks import KeyedLockRegistry, lock_registry
from training_engine.utils.transactions import commit

logger = logging.getLogger(__name__)

ATTEMPT_LOCK = "quiz_attempt"
QUIZ_ASSIGNMENT_LOCK = "quiz_assignment"

# Lock order is always attempt -> quiz assignment -> training assignment

PROPAGATION_RETRIES = 3


class AttemptService:
    """
    Service owning the state machine of quiz attempts

    Remaining time is never stored: it is derived from started_at and the
    duration snapshot, so a reload reconstructs it exactly. Submission is a
    single check-and-set UPDATE on status; whichever of manual submit and
    timeout wins records the result, the other gets the stored result back.
    """

    def __init__(
        self,
        quiz_service: QuizService,
        progress_service: Optional[ProgressService] = None,
        clock: Clock = system_clock,
        scheduler: Optional[TimeoutScheduler] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        locks: KeyedLockRegistry = lock_registry,
        grader: GradingService = grading_service,
        grace_seconds: int = None
    ):
        self.quiz_service = quiz_service
        self.progress_service = progress_service
        self.clock = clock
        self.scheduler = scheduler or NullTimeoutScheduler()
        self.session_factory = session_factory
        self.locks = locks
        self.grader = grader
        self.grace = timedelta(
            seconds=settings.AUTO_SUBMIT_GRACE_SECONDS if grace_seconds is None else grace_seconds
        )

    # ---------------------------------------------------------------- start

    def start_attempt(self, db: Session, assignment_id) -> AttemptStarted:
        """
        Start a new attempt for a quiz assignment

        Args:
            db: Database session
            assignment_id: QuizAssignment UUID

        Returns:
            AttemptStarted with the learner view of the quiz

        Raises:
            NotFoundError: unknown assignment
            AttemptLimitExceededError: attempts exhausted, quiz already
                passed, or another attempt still in progress
        """
        assignment_id = to_uuid(assignment_id, "assignment")

        # An expired attempt that was never auto-submitted (timer lost in a
        # restart) is closed first so it does not block the new one.
        stale = self.get_active_attempt(db, assignment_id)
        if stale is not None and self.is_expired(stale):
            self.auto_submit_on_timeout(db, stale.id)

        with self.locks.hold(QUIZ_ASSIGNMENT_LOCK, assignment_id):
            assignment = self._get_assignment(db, assignment_id)
            snapshot = self.quiz_service.get_snapshot(db, assignment.quiz_id)

            if assignment.status == QuizAssignmentStatus.COMPLETED:
                raise AttemptLimitExceededError("Quiz already completed")

            if snapshot.max_attempts is not None and assignment.attempts_used >= snapshot.max_attempts:
                raise AttemptLimitExceededError(
                    f"Maximum attempts ({snapshot.max_attempts}) reached",
                    details={"attempts_used": assignment.attempts_used}
                )

            if self.get_active_attempt(db, assignment_id) is not None:
                raise AttemptLimitExceededError("Another attempt is already in progress")

            attempt = QuizAttempt(
                assignment_id=assignment.id,
                attempt_number=assignment.attempts_used + 1,
                started_at=self.clock.now(),
                duration_minutes=snapshot.duration_minutes,
                quiz_snapshot=snapshot.model_dump(mode="json"),
                answers={},
                status=AttemptStatus.IN_PROGRESS,
                auto_submitted=False,
            )
            db.add(attempt)

            if assignment.status == QuizAssignmentStatus.NOT_STARTED:
                assignment.status = QuizAssignmentStatus.IN_PROGRESS

            try:
                commit(db, f"quiz assignment {assignment_id}")
            except IntegrityError:
                # Lost the race against a concurrent start for the same assignment
                raise AttemptLimitExceededError("Another attempt is already in progress")

        self._schedule_timeout(attempt)

        if assignment.training_assignment_id and assignment.module_id and self.progress_service:
            self.progress_service.start_module(
                db, assignment.training_assignment_id, assignment.module_id
            )

        logger.info(
            f"Started quiz attempt {attempt.attempt_number} ({attempt.id}) "
            f"for assignment {assignment_id}"
        )
        return self._started_view(attempt, resumed=False)

    def resume_attempt(self, db: Session, assignment_id) -> AttemptStarted:
        """
        Return the in-progress attempt of an assignment after a reload

        Raises:
            NotFoundError: no attempt in progress (an expired one is
                auto-submitted first)
        """
        attempt = self.get_active_attempt(db, assignment_id)
        if attempt is not None and self.is_expired(attempt):
            self.auto_submit_on_timeout(db, attempt.id)
            attempt = None

        if attempt is None:
            raise NotFoundError(f"No attempt in progress for assignment {assignment_id}")

        self._schedule_timeout(attempt)
        return self._started_view(attempt, resumed=True)

    # ----------------------------------------------------------------- time

    def deadline(self, attempt: QuizAttempt) -> datetime:
        return attempt.started_at + timedelta(minutes=attempt.duration_minutes)

    def time_remaining(self, attempt: QuizAttempt, now: datetime = None) -> timedelta:
        """Remaining time as a pure function of the wall clock, never negative"""
        now = now or self.clock.now()
        return max(self.deadline(attempt) - now, timedelta(0))

    def is_expired(self, attempt: QuizAttempt, now: datetime = None) -> bool:
        now = now or self.clock.now()
        return now >= self.deadline(attempt) + self.grace

    # -------------------------------------------------------------- answers

    def record_answers(self, db: Session, attempt_id, raw_answers: RawAnswers) -> Dict[str, List[str]]:
        """
        Save answers of an in-progress attempt

        Only the questions present in raw_answers are replaced; these are
        the answers an auto-submit will grade.

        Raises:
            InvalidAnswerError: unknown question or option
            InvalidTransitionError: attempt submitted or out of time
        """
        attempt_id = to_uuid(attempt_id, "attempt")

        with self.locks.hold(ATTEMPT_LOCK, attempt_id):
            attempt = self.get_attempt(db, attempt_id)
            if attempt.status == AttemptStatus.SUBMITTED:
                raise InvalidTransitionError(f"Attempt {attempt_id} is already submitted")
            if self.is_expired(attempt):
                raise InvalidTransitionError(f"Time is up for attempt {attempt_id}")

            snapshot = QuizSnapshot.model_validate(attempt.quiz_snapshot)
            normalized = normalize_answers(snapshot, raw_answers)

            merged = dict(attempt.answers or {})
            for q_id in raw_answers:
                merged[str(q_id)] = sorted(normalized[str(q_id)])
            attempt.answers = merged

            commit(db, f"quiz attempt {attempt_id}")

        return merged

    # --------------------------------------------------------------- submit

    def submit(
        self,
        db: Session,
        attempt_id,
        raw_answers: Optional[RawAnswers] = None,
        force_auto: bool = False
    ) -> SubmissionOutcome:
        """
        Grade and close an attempt

        Args:
            db: Database session
            attempt_id: QuizAttempt UUID
            raw_answers: Final answers; None grades the recorded answers
            force_auto: Mark the submission as timeout-triggered

        Returns:
            SubmissionOutcome; on an already SUBMITTED attempt the stored
            result with already_submitted=True

        Raises:
            InvalidAnswerError: answers rejected, nothing recorded
            ConcurrentUpdateError: assignment changed concurrently, retry
        """
        attempt_id = to_uuid(attempt_id, "attempt")

        with self.locks.hold(ATTEMPT_LOCK, attempt_id):
            attempt = self.get_attempt(db, attempt_id)
            if attempt.status == AttemptStatus.SUBMITTED:
                logger.info(f"Attempt {attempt_id} already submitted, returning stored result")
                outcome = self._stored_outcome(attempt, already_submitted=True)
            else:
                outcome = self._grade_and_record(db, attempt, raw_answers, force_auto)

        self.scheduler.cancel(str(attempt_id))
        self._propagate_to_module(db, attempt.assignment_id, outcome.result)
        return outcome

    def auto_submit_on_timeout(self, db: Session, attempt_id) -> Optional[SubmissionOutcome]:
        """
        Force-submit an attempt whose time is up with its recorded answers

        Returns:
            The outcome, the stored outcome when already submitted, or None
            when the attempt is not due yet
        """
        attempt = self.get_attempt(db, to_uuid(attempt_id, "attempt"))

        if attempt.status == AttemptStatus.SUBMITTED:
            return self._stored_outcome(attempt, already_submitted=True)
        if not self.is_expired(attempt):
            logger.info(f"Timeout fired early for attempt {attempt.id}, rescheduling")
            self._schedule_timeout(attempt)
            return None

        return self.submit(db, attempt.id, force_auto=True)

    def expire_overdue_attempts(self, db: Session) -> List[SubmissionOutcome]:
        """
        Auto-submit every in-progress attempt past its deadline

        Meant to run periodically; recovers attempts whose in-process timer
        was lost. One failing attempt does not stop the sweep.
        """
        now = self.clock.now()
        in_progress = db.query(QuizAttempt).filter(
            QuizAttempt.status == AttemptStatus.IN_PROGRESS
        ).order_by(QuizAttempt.started_at).all()
        overdue = [attempt.id for attempt in in_progress if self.is_expired(attempt, now)]

        outcomes = []
        for attempt_id in overdue:
            try:
                outcome = self.auto_submit_on_timeout(db, attempt_id)
            except TrainingEngineError as e:
                logger.error(f"Auto-submit failed for attempt {attempt_id}: {e.message}")
                continue
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Auto-submit failed for attempt {attempt_id}: {str(e)}", exc_info=True)
                continue
            if outcome is not None:
                outcomes.append(outcome)

        logger.info(f"Expired {len(outcomes)} of {len(overdue)} overdue attempts")
        return outcomes

    # -------------------------------------------------------------- queries

    def get_attempt(self, db: Session, attempt_id) -> QuizAttempt:
        attempt = db.get(QuizAttempt, to_uuid(attempt_id, "attempt"), populate_existing=True)
        if not attempt:
            raise NotFoundError(f"Attempt not found: {attempt_id}")
        return attempt

    def get_active_attempt(self, db: Session, assignment_id) -> Optional[QuizAttempt]:
        return db.query(QuizAttempt).filter(
            QuizAttempt.assignment_id == to_uuid(assignment_id, "assignment"),
            QuizAttempt.status == AttemptStatus.IN_PROGRESS
        ).populate_existing().first()

    def get_result(self, db: Session, attempt_id) -> SubmissionOutcome:
        """Stored result of a submitted attempt"""
        attempt = self.get_attempt(db, attempt_id)
        if attempt.status != AttemptStatus.SUBMITTED:
            raise InvalidTransitionError(f"Attempt {attempt_id} is still in progress")
        return self._stored_outcome(attempt, already_submitted=True)

    def get_quiz_for_attempt(self, attempt: QuizAttempt) -> LearnerQuizView:
        """
        Learner view of the attempt's snapshot

        Correct answers are hidden. With shuffle_questions the order is
        shuffled with the attempt id as seed, so it is stable across reloads.
        """
        snapshot = QuizSnapshot.model_validate(attempt.quiz_snapshot)
        questions = list(snapshot.questions)
        if snapshot.shuffle_questions:
            random.Random(str(attempt.id)).shuffle(questions)

        return LearnerQuizView(
            quiz_id=snapshot.quiz_id,
            title=snapshot.title,
            passing_score=snapshot.passing_score,
            duration_minutes=attempt.duration_minutes,
            total_points=snapshot.total_points,
            questions=[
                LearnerQuestionView(
                    id=q.id,
                    text=q.text,
                    type=q.type,
                    points=q.points,
                    options=[LearnerOptionView(id=o.id, text=o.text) for o in q.options],
                )
                for q in questions
            ],
        )

    # ------------------------------------------------------------ internals

    def _grade_and_record(
        self,
        db: Session,
        attempt: QuizAttempt,
        raw_answers: Optional[RawAnswers],
        force_auto: bool
    ) -> SubmissionOutcome:
        now = self.clock.now()
        auto = force_auto or self.is_expired(attempt, now)
        if auto and raw_answers is not None:
            logger.warning(f"Attempt {attempt.id} is out of time, grading recorded answers only")
            raw_answers = None

        snapshot = QuizSnapshot.model_validate(attempt.quiz_snapshot)
        source = raw_answers if raw_answers is not None else (attempt.answers or {})
        normalized = normalize_answers(snapshot, source)
        result = self.grader.grade_attempt(snapshot, normalized)

        elapsed = int((now - attempt.started_at).total_seconds())
        time_spent = max(0, min(elapsed, attempt.duration_minutes * 60))

        with self.locks.hold(QUIZ_ASSIGNMENT_LOCK, attempt.assignment_id):
            # Check-and-set: only the caller that flips IN_PROGRESS wins
            updated = db.query(QuizAttempt).filter(
                QuizAttempt.id == attempt.id,
                QuizAttempt.status == AttemptStatus.IN_PROGRESS
            ).update(
                {
                    QuizAttempt.status: AttemptStatus.SUBMITTED,
                    QuizAttempt.answers: {q: sorted(s) for q, s in normalized.items() if s},
                    QuizAttempt.score: result.score,
                    QuizAttempt.total_points: result.total_points,
                    QuizAttempt.score_percent: result.score_percent,
                    QuizAttempt.passed: result.passed,
                    QuizAttempt.question_results: [
                        g.model_dump(mode="json") for g in result.questions
                    ],
                    QuizAttempt.submitted_at: now,
                    QuizAttempt.time_spent_seconds: time_spent,
                    QuizAttempt.auto_submitted: auto,
                    QuizAttempt.version: QuizAttempt.version + 1,
                },
                synchronize_session=False
            )

            if updated != 1:
                db.rollback()
                attempt = self.get_attempt(db, attempt.id)
                logger.info(f"Attempt {attempt.id} was submitted concurrently, returning stored result")
                return self._stored_outcome(attempt, already_submitted=True)

            assignment = self._get_assignment(db, attempt.assignment_id)
            self._apply_to_assignment(assignment, snapshot, result, now)
            commit(db, f"quiz assignment {assignment.id}")

        attempt = self.get_attempt(db, attempt.id)
        logger.info(
            f"Submitted quiz attempt {attempt.id} with score {result.score_percent}% "
            f"(passed={result.passed}, auto={auto})"
        )
        return self._stored_outcome(attempt, already_submitted=False)

    def _apply_to_assignment(
        self,
        assignment: QuizAssignment,
        snapshot: QuizSnapshot,
        result: AttemptResult,
        now: datetime
    ) -> None:
        assignment.attempts_used += 1
        if assignment.best_score is None or result.score_percent > assignment.best_score:
            assignment.best_score = result.score_percent
        assignment.passed = bool(assignment.passed) or result.passed

        if result.passed:
            if assignment.status != QuizAssignmentStatus.COMPLETED:
                assignment.status = QuizAssignmentStatus.COMPLETED
                assignment.completed_at = now
        elif (
            not assignment.passed
            and snapshot.max_attempts is not None
            and assignment.attempts_used >= snapshot.max_attempts
        ):
            assignment.status = QuizAssignmentStatus.FAILED

    def _propagate_to_module(self, db: Session, assignment_id, result: AttemptResult) -> None:
        """Feed the result into the QUIZ module and cascade, retrying conflicts"""
        if self.progress_service is None:
            return

        assignment = self._get_assignment(db, assignment_id)
        if not (assignment.training_assignment_id and assignment.module_id):
            return

        for attempt_number in range(1, PROPAGATION_RETRIES + 1):
            try:
                self.progress_service.complete_via_quiz(
                    db, assignment.training_assignment_id, assignment.module_id, result
                )
                return
            except ConcurrentUpdateError:
                if attempt_number == PROPAGATION_RETRIES:
                    raise
                logger.warning(
                    f"Retrying module update for assignment {assignment.training_assignment_id} "
                    f"({attempt_number}/{PROPAGATION_RETRIES})"
                )

    def _get_assignment(self, db: Session, assignment_id) -> QuizAssignment:
        assignment = db.get(QuizAssignment, assignment_id, populate_existing=True)
        if not assignment:
            raise NotFoundError(f"Quiz assignment not found: {assignment_id}")
        return assignment

    def _schedule_timeout(self, attempt: QuizAttempt) -> None:
        attempt_id = attempt.id
        self.scheduler.schedule(
            str(attempt_id),
            self.deadline(attempt) + self.grace,
            lambda: self._on_timeout(attempt_id)
        )

    def _on_timeout(self, attempt_id) -> None:
        # Runs on the scheduler thread with a session of its own
        try:
            with session_scope(self.session_factory) as db:
                self.auto_submit_on_timeout(db, attempt_id)
        except Exception as e:
            logger.error(f"Auto-submit failed for attempt {attempt_id}: {str(e)}", exc_info=True)

    def _started_view(self, attempt: QuizAttempt, resumed: bool) -> AttemptStarted:
        return AttemptStarted(
            attempt_id=str(attempt.id),
            assignment_id=str(attempt.assignment_id),
            attempt_number=attempt.attempt_number,
            started_at=attempt.started_at,
            deadline=self.deadline(attempt),
            time_remaining_seconds=int(self.time_remaining(attempt).total_seconds()),
            quiz=self.get_quiz_for_attempt(attempt),
            resumed=resumed,
        )

    def _stored_outcome(self, attempt: QuizAttempt, already_submitted: bool) -> SubmissionOutcome:
        snapshot = QuizSnapshot.model_validate(attempt.quiz_snapshot)
        result = AttemptResult(
            score=attempt.score,
            total_points=attempt.total_points,
            score_percent=attempt.score_percent,
            passed=attempt.passed,
            passing_score=snapshot.passing_score,
            questions=tuple(QuestionGrade.model_validate(q) for q in attempt.question_results),
        )
        return SubmissionOutcome(
            attempt_id=str(attempt.id),
            assignment_id=str(attempt.assignment_id),
            result=result,
            submitted_at=attempt.submitted_at,
            time_spent_seconds=attempt.time_spent_seconds,
            auto_submitted=attempt.auto_submitted,
            already_submitted=already_submitted,
            answer_key=snapshot if snapshot.show_correct_answers else None,
        )
