"""
Training, module, assignment and per-module progress models
"""
import uuid

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Enum, ForeignKey, Integer, String, Text,
    UniqueConstraint, Uuid, func
)
from sqlalchemy.orm import relationship

from training_engine.database import Base
from training_engine.models.enums import MaterialType, ProgressStatus


class Training(Base):
    """Trainings table - an ordered set of modules"""
    __tablename__ = "trainings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    category = Column(String(50))
    created_at = Column(DateTime, server_default=func.now())

    modules = relationship(
        "TrainingModule",
        back_populates="training",
        order_by="TrainingModule.order_index",
        cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Training(id={self.id}, title={self.title})>"


class TrainingModule(Base):
    """
    Training modules table - one step of a training

    order_index is display order only; completion is gated on is_mandatory.
    """
    __tablename__ = "training_modules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    training_id = Column(Uuid, ForeignKey("trainings.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    material_type = Column(
        Enum(MaterialType, native_enum=False, length=20),
        nullable=False,
        default=MaterialType.LINK
    )
    material_url = Column(String(1024))
    duration_minutes = Column(Integer)
    order_index = Column(Integer, nullable=False)
    is_mandatory = Column(Boolean, nullable=False, default=True)
    quiz_id = Column(Uuid, ForeignKey("quizzes.id"))  # Only for QUIZ modules

    training = relationship("Training", back_populates="modules")
    quiz = relationship("Quiz")

    __table_args__ = (
        UniqueConstraint("training_id", "order_index", name="uq_training_modules_order"),
    )

    @property
    def is_quiz(self) -> bool:
        return self.material_type == MaterialType.QUIZ

    def __repr__(self):
        return (
            f"<TrainingModule(id={self.id}, type={self.material_type}, "
            f"order={self.order_index}, mandatory={self.is_mandatory})>"
        )


class TrainingAssignment(Base):
    """
    Training assignments table - one learner working through one training

    Created once on assignment and only ever mutated afterwards. Status is
    derived by the completion cascade from the module progress rows.
    """
    __tablename__ = "training_assignments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    learner_id = Column(Uuid, nullable=False, index=True)
    training_id = Column(Uuid, ForeignKey("trainings.id"), nullable=False, index=True)
    due_date = Column(Date)
    status = Column(
        Enum(ProgressStatus, native_enum=False, length=20),
        nullable=False,
        default=ProgressStatus.NOT_STARTED
    )
    completed_module_count = Column(Integer, nullable=False, default=0)
    progress_percentage = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    certificate_requested_at = Column(DateTime)  # Set once, on the first completion edge
    created_at = Column(DateTime, server_default=func.now())
    version = Column(Integer, nullable=False)

    training = relationship("Training")
    module_progress = relationship(
        "ModuleProgress",
        back_populates="assignment",
        cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return (
            f"<TrainingAssignment(id={self.id}, status={self.status}, "
            f"completed_modules={self.completed_module_count})>"
        )


class ModuleProgress(Base):
    """Module progress table - NOT_STARTED -> IN_PROGRESS -> COMPLETED, never backwards"""
    __tablename__ = "module_progress"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    assignment_id = Column(Uuid, ForeignKey("training_assignments.id"), nullable=False, index=True)
    module_id = Column(Uuid, ForeignKey("training_modules.id"), nullable=False)
    status = Column(
        Enum(ProgressStatus, native_enum=False, length=20),
        nullable=False,
        default=ProgressStatus.NOT_STARTED
    )
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    notes = Column(Text)
    time_spent_minutes = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)

    assignment = relationship("TrainingAssignment", back_populates="module_progress")
    module = relationship("TrainingModule")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("assignment_id", "module_id", name="uq_module_progress_assignment_module"),
    )

    def __repr__(self):
        return f"<ModuleProgress(module_id={self.module_id}, status={self.status})>"
