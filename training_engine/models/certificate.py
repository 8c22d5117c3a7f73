"""
Certificate and certificate-request (outbox) models
"""
import uuid

from sqlalchemy import (
    Column, Date, DateTime, Enum, ForeignKey, Integer, String, Text, Uuid, func
)

from training_engine.database import Base
from training_engine.models.enums import CertificateRequestStatus, CertificateStatus


class CertificateRequest(Base):
    """
    Certificate requests table - outbox of pending issuer calls

    One row per training assignment; the unique constraint is what keeps a
    completion edge from ever requesting a second certificate.
    """
    __tablename__ = "certificate_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    assignment_id = Column(
        Uuid, ForeignKey("training_assignments.id"), nullable=False, unique=True
    )
    status = Column(
        Enum(CertificateRequestStatus, native_enum=False, length=20),
        nullable=False,
        default=CertificateRequestStatus.PENDING
    )
    attempts = Column(Integer, nullable=False, default=0)
    claimed_at = Column(DateTime)  # set while a dispatcher holds the row
    last_error = Column(Text)
    certificate_id = Column(String(64))
    requested_at = Column(DateTime, nullable=False)
    issued_at = Column(DateTime)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return (
            f"<CertificateRequest(assignment_id={self.assignment_id}, "
            f"status={self.status}, attempts={self.attempts})>"
        )


class Certificate(Base):
    """Certificates table - written by the default database-backed issuer"""
    __tablename__ = "certificates"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    certificate_number = Column(String(64), nullable=False, unique=True, index=True)
    learner_id = Column(Uuid, nullable=False, index=True)
    training_id = Column(Uuid, ForeignKey("trainings.id"), nullable=False)
    assignment_id = Column(
        Uuid, ForeignKey("training_assignments.id"), nullable=False, unique=True
    )
    issued_date = Column(Date, nullable=False)
    expiry_date = Column(Date)
    issued_by = Column(String(255))
    verification_url = Column(String(255))
    status = Column(
        Enum(CertificateStatus, native_enum=False, length=20),
        nullable=False,
        default=CertificateStatus.ACTIVE
    )
    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<Certificate(number={self.certificate_number}, assignment_id={self.assignment_id})>"
