"""
Database models package
"""
from training_engine.models.quiz import Quiz, QuizQuestion, QuizOption
from training_engine.models.quiz_attempt import QuizAssignment, QuizAttempt
from training_engine.models.training import (
    Training, TrainingModule, TrainingAssignment, ModuleProgress
)
from training_engine.models.certificate import Certificate, CertificateRequest

__all__ = [
    "Quiz",
    "QuizQuestion",
    "QuizOption",
    "QuizAssignment",
    "QuizAttempt",
    "Training",
    "TrainingModule",
    "TrainingAssignment",
    "ModuleProgress",
    "Certificate",
    "CertificateRequest",
]
