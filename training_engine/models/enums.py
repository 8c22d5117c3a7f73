"""
Status and type enumerations shared by models and schemas
"""
import enum


class QuizStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class QuestionType(str, enum.Enum):
    SINGLE_CHOICE = "SINGLE_CHOICE"
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    TRUE_FALSE = "TRUE_FALSE"

    @property
    def single_answer(self) -> bool:
        return self is not QuestionType.MULTIPLE_CHOICE


class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"


class QuizAssignmentStatus(str, enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class MaterialType(str, enum.Enum):
    VIDEO = "VIDEO"
    DOCUMENT = "DOCUMENT"
    LINK = "LINK"
    QUIZ = "QUIZ"
    ASSIGNMENT = "ASSIGNMENT"


class ProgressStatus(str, enum.Enum):
    """Shared by ModuleProgress and TrainingAssignment"""

    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class CertificateRequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    DISPATCHING = "DISPATCHING"
    ISSUED = "ISSUED"
    FAILED = "FAILED"


class CertificateStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"
