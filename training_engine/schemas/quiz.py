"""
Pydantic schemas for quiz authoring and frozen quiz snapshots
"""
from typing import Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, Field

from training_engine.models.enums import QuestionType


class OptionCreate(BaseModel):
    """Answer option in an authoring request"""
    option_text: str = Field(..., min_length=1)
    is_correct: bool = False


class QuestionCreate(BaseModel):
    """Question in an authoring request"""
    question_text: str = Field(..., min_length=1)
    type: QuestionType
    points: int = Field(1, gt=0, description="Weight of the question")
    explanation: Optional[str] = None
    options: List[OptionCreate] = Field(default_factory=list)


class QuizCreate(BaseModel):
    """Request schema for quiz creation"""
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    passing_score: Optional[int] = Field(None, ge=0, le=100, description="Percent required to pass")
    duration_minutes: Optional[int] = Field(None, gt=0)
    max_attempts: Optional[int] = Field(None, gt=0, description="None means unlimited")
    shuffle_questions: bool = False
    show_correct_answers: bool = True
    questions: List[QuestionCreate] = Field(default_factory=list)


class OptionSnapshot(BaseModel):
    """Option as frozen at publish time"""
    id: str
    text: str
    is_correct: bool

    class Config:
        frozen = True


class QuestionSnapshot(BaseModel):
    """Question as frozen at publish time"""
    id: str
    text: str
    type: QuestionType
    points: int = Field(1, gt=0)
    options: List[OptionSnapshot]

    class Config:
        frozen = True

    @property
    def option_ids(self) -> FrozenSet[str]:
        return frozenset(o.id for o in self.options)

    @property
    def correct_option_ids(self) -> FrozenSet[str]:
        return frozenset(o.id for o in self.options if o.is_correct)


class QuizSnapshot(BaseModel):
    """
    Immutable grading content of a published quiz

    Copied onto every attempt at start time; historical grading only ever
    reads the attempt's copy.
    """
    quiz_id: str
    title: str
    passing_score: int = Field(..., ge=0, le=100)
    duration_minutes: int = Field(..., gt=0)
    max_attempts: Optional[int] = Field(None, gt=0)
    shuffle_questions: bool = False
    show_correct_answers: bool = True
    questions: List[QuestionSnapshot]

    class Config:
        frozen = True

    @property
    def total_points(self) -> int:
        return sum(q.points for q in self.questions)

    def question_map(self) -> Dict[str, QuestionSnapshot]:
        return {q.id: q for q in self.questions}


# Raw learner selections: {question_id: option_id | [option_id, ...] | None}
RawAnswers = Dict[str, Union[str, List[str], None]]


class LearnerOptionView(BaseModel):
    """Option shown to a learner during an attempt (no correctness)"""
    id: str
    text: str


class LearnerQuestionView(BaseModel):
    """Question shown to a learner during an attempt"""
    id: str
    text: str
    type: QuestionType
    points: int
    options: List[LearnerOptionView]


class LearnerQuizView(BaseModel):
    """Quiz content for an in-progress attempt with correct answers hidden"""
    quiz_id: str
    title: str
    passing_score: int
    duration_minutes: int
    total_points: int
    questions: List[LearnerQuestionView]
