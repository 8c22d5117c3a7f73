"""
Pydantic schemas for grading results and attempt lifecycle responses
"""
from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import BaseModel

from training_engine.schemas.quiz import LearnerQuizView, QuizSnapshot


class QuestionGrade(BaseModel):
    """Grading outcome of a single question"""
    question_id: str
    is_correct: bool
    earned_points: int
    max_points: int
    selected_option_ids: Tuple[str, ...]
    correct_option_ids: Tuple[str, ...]

    class Config:
        frozen = True


class AttemptResult(BaseModel):
    """Immutable grading outcome of a whole attempt"""
    score: int  # earned points
    total_points: int
    score_percent: int
    passed: bool
    passing_score: int
    questions: Tuple[QuestionGrade, ...]

    class Config:
        frozen = True

    @property
    def score_display(self) -> str:
        return f"{self.score}/{self.total_points}"


class AttemptStarted(BaseModel):
    """Response after starting (or resuming) an attempt"""
    attempt_id: str
    assignment_id: str
    attempt_number: int
    started_at: datetime
    deadline: datetime
    time_remaining_seconds: int
    quiz: LearnerQuizView
    resumed: bool = False


class SubmissionOutcome(BaseModel):
    """Response after submitting an attempt; identical on repeated submits"""
    attempt_id: str
    assignment_id: str
    result: AttemptResult
    submitted_at: datetime
    time_spent_seconds: int
    auto_submitted: bool
    already_submitted: bool = False
    # Full quiz with correct answers, only when the quiz allows it
    answer_key: Optional[QuizSnapshot] = None


class AttemptSummary(BaseModel):
    """Compact attempt history row"""
    attempt_id: str
    attempt_number: int
    status: str
    started_at: datetime
    submitted_at: Optional[datetime] = None
    score_percent: Optional[int] = None
    passed: Optional[bool] = None
    auto_submitted: bool = False


class AttemptHistory(BaseModel):
    """All attempts of one quiz assignment"""
    assignment_id: str
    status: str
    attempts_used: int
    best_score: Optional[int] = None
    passed: bool
    attempts: List[AttemptSummary]
