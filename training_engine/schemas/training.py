"""
Pydantic schemas for trainings, module progress, cascade outcomes and statistics
"""
from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from training_engine.models.enums import MaterialType, ProgressStatus


class ModuleCreate(BaseModel):
    """Module in a training authoring request"""
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    material_type: MaterialType = MaterialType.LINK
    material_url: Optional[str] = None
    duration_minutes: Optional[int] = Field(None, ge=0)
    order_index: int = Field(..., ge=0)
    is_mandatory: bool = True
    quiz_id: Optional[UUID] = None

    @model_validator(mode="after")
    def check_quiz_reference(self):
        if self.material_type == MaterialType.QUIZ and self.quiz_id is None:
            raise ValueError("QUIZ modules require a quiz_id")
        if self.material_type != MaterialType.QUIZ and self.quiz_id is not None:
            raise ValueError("Only QUIZ modules may reference a quiz")
        return self


class TrainingCreate(BaseModel):
    """Request schema for training creation"""
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = None
    modules: List[ModuleCreate] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_order(self):
        order = [m.order_index for m in self.modules]
        if len(order) != len(set(order)):
            raise ValueError("Module order_index values must be unique within a training")
        return self


class CascadeOutcome(BaseModel):
    """Result of one completion-cascade recomputation"""
    assignment_id: str
    previous_status: ProgressStatus
    status: ProgressStatus
    completed_module_count: int
    progress_percentage: int
    completion_edge: bool  # True only on the transition into COMPLETED
    certificate_requested: bool  # True only when this run queued the certificate


class ModuleProgressView(BaseModel):
    """Status of one module within an assignment"""
    module_id: str
    title: str
    material_type: MaterialType
    order_index: int
    is_mandatory: bool
    quiz_id: Optional[str] = None
    status: ProgressStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    time_spent_minutes: int = 0
    notes: Optional[str] = None


class ModuleUpdate(BaseModel):
    """Outcome of a module-progress operation"""
    module: ModuleProgressView
    changed: bool
    assignment: CascadeOutcome


class AssignmentProgressView(BaseModel):
    """Training assignment with its modules in display order"""
    assignment_id: str
    training_id: str
    training_title: str
    status: ProgressStatus
    completed_module_count: int
    total_modules: int
    progress_percentage: int
    due_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    certificate_id: Optional[str] = None
    modules: List[ModuleProgressView]


class QuizStatistics(BaseModel):
    """Aggregate statistics for one quiz"""
    quiz_id: str
    total_assignments: int
    completed_count: int
    passed_count: int
    failed_count: int
    average_best_score: Optional[float] = None
    total_attempts: int
    total_questions: int
    total_points: int
