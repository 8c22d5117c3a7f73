from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from training_engine.database import init_db
from training_engine.main import TrainingEngine
from training_engine.models.enums import MaterialType, QuestionType
from training_engine.schemas.quiz import OptionCreate, QuestionCreate, QuizCreate
from training_engine.schemas.training import ModuleCreate, TrainingCreate
from training_engine.utils.cache import CacheService
from training_engine.utils.locks import KeyedLockRegistry


T0 = datetime(2026, 1, 5, 9, 0, 0)


class FrozenClock:
    def __init__(self, now=T0):
        self.current = now

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current


class ManualTimeoutScheduler:
    """Keeps scheduled callbacks until a test fires them"""

    def __init__(self):
        self.scheduled = {}
        self.cancelled = []

    def schedule(self, attempt_id, fire_at, callback):
        self.scheduled[attempt_id] = (fire_at, callback)

    def cancel(self, attempt_id):
        self.cancelled.append(attempt_id)
        self.scheduled.pop(attempt_id, None)

    def fire_at(self, attempt_id):
        return self.scheduled[str(attempt_id)][0]

    def fire(self, attempt_id):
        _, callback = self.scheduled.pop(str(attempt_id))
        callback()


class RecordingIssuer:
    """Certificate issuer that records calls and can fail the first N of them"""

    def __init__(self, fail_times=0):
        self.calls = []
        self.fail_times = fail_times
        self.during_issue = None  # one-shot callback run inside the next call

    def issue(self, training_assignment_id):
        self.calls.append(training_assignment_id)
        if self.during_issue is not None:
            callback, self.during_issue = self.during_issue, None
            callback()
        if len(self.calls) <= self.fail_times:
            raise RuntimeError("issuer unavailable")
        return f"CERT-{len(self.calls)}"


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'engine.db'}",
        connect_args={"check_same_thread": False},
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def scheduler():
    return ManualTimeoutScheduler()


@pytest.fixture
def issuer():
    return RecordingIssuer()


@pytest.fixture
def services(session_factory, clock, scheduler, issuer):
    return TrainingEngine(
        session_factory=session_factory,
        clock=clock,
        issuer=issuer,
        scheduler=scheduler,
        cache=CacheService(None),
        locks=KeyedLockRegistry(),
    )


def single(text, correct, wrong=("Wrong",), points=1):
    options = [OptionCreate(option_text=correct, is_correct=True)]
    options += [OptionCreate(option_text=w) for w in wrong]
    return QuestionCreate(
        question_text=text, type=QuestionType.SINGLE_CHOICE, points=points, options=options
    )


def multiple(text, correct, wrong, points=1):
    options = [OptionCreate(option_text=c, is_correct=True) for c in correct]
    options += [OptionCreate(option_text=w) for w in wrong]
    return QuestionCreate(
        question_text=text, type=QuestionType.MULTIPLE_CHOICE, points=points, options=options
    )


def option_id(snapshot, question_index, text):
    question = snapshot.questions[question_index]
    return next(o.id for o in question.options if o.text == text)


@pytest.fixture
def publish_quiz(services, db):
    def _publish(questions=None, **fields):
        request = QuizCreate(
            title=fields.pop("title", "Safety Basics"),
            questions=questions or [single("Q1", "Right")],
            **fields,
        )
        quiz = services.quizzes.create_quiz(db, request)
        snapshot = services.quizzes.publish_quiz(db, quiz.id)
        return quiz, snapshot

    return _publish


@pytest.fixture
def build_training(services, db):
    def _build(modules, title="Onboarding", category=None):
        request = TrainingCreate(
            title=title,
            category=category,
            modules=[
                ModuleCreate(order_index=index, **module) for index, module in enumerate(modules)
            ],
        )
        return services.trainings.create_training(db, request)

    return _build


def link_module(title, mandatory=True):
    return {"title": title, "material_type": MaterialType.LINK, "is_mandatory": mandatory}


def quiz_module(title, quiz_id, mandatory=True):
    return {
        "title": title,
        "material_type": MaterialType.QUIZ,
        "quiz_id": quiz_id,
        "is_mandatory": mandatory,
    }
