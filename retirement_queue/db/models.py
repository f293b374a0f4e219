"""
SQLAlchemy ORM Models

cases, documents, retirement_cases and status_history belong to the analysis
pipeline; jobs is owned by the job queue (services/job_queue.py).
"""
from __future__ import annotations

import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import relationship

from retirement_queue.db.database import Base
from retirement_queue.utils.helpers import utcnow

# ============================================================================
# Enums
# ============================================================================

class ProcessingStatus(str, enum.Enum):
    """Analysis status of a case"""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class RetirementStatus(str, enum.Enum):
    """Workflow status of a retirement case"""
    ANALYSIS_PENDING = "ANALYSIS_PENDING"
    IN_ANALYSIS = "IN_ANALYSIS"
    IN_DILIGENCE = "IN_DILIGENCE"
    RETURN_FROM_DILIGENCE = "RETURN_FROM_DILIGENCE"
    CONCLUDED = "CONCLUDED"
    INVALID_READING = "INVALID_READING"


class JobState(str, enum.Enum):
    available = "available"
    running = "running"
    retryable = "retryable"
    completed = "completed"
    cancelled = "cancelled"
    discarded = "discarded"


# ============================================================================
# Models
# ============================================================================

class Case(Base):
    """External administrative process under analysis"""
    __tablename__ = "cases"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    number = Column(String(64), unique=True, nullable=False, index=True)

    # Originating unit in the CMS
    unit_id = Column(String(32), nullable=False)
    unit_abbrev = Column(String(128), nullable=False)
    access_link = Column(Text, nullable=False)

    status_processing = Column(
        SQLEnum(ProcessingStatus), nullable=False, default=ProcessingStatus.PENDING
    )

    # Classifier output
    classification = Column(Boolean, nullable=True)
    analysed_at = Column(DateTime, nullable=True)
    classifier_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    documents = relationship("Document", back_populates="case", order_by="Document.id")
    retirement_case = relationship("RetirementCase", back_populates="case", uselist=False)


class Document(Base):
    """One attachment inside a case"""
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Uuid, ForeignKey("cases.id"), nullable=False, index=True)
    number = Column(String(64), unique=True, nullable=False, index=True)

    type = Column(String(255), nullable=False, default="")
    unit = Column(String(128), nullable=False, default="")
    access_link = Column(Text, nullable=False, default="")
    mime_type = Column(String(255), nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    # "metadata" is reserved on declarative classes
    raw_metadata = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    case = relationship("Case", back_populates="documents")


class RetirementCase(Base):
    """Case classified as a retirement request"""
    __tablename__ = "retirement_cases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Uuid, ForeignKey("cases.id"), unique=True, nullable=False, index=True)

    requester_id = Column(String(32), nullable=False)
    birth_date = Column(Date, nullable=False)
    request_date = Column(Date, nullable=False)
    invalidity = Column(Boolean, nullable=False, default=False)
    judicial = Column(Boolean, nullable=False, default=False)
    priority = Column(Boolean, nullable=False, default=False)
    score = Column(Integer, nullable=False, default=0)
    status = Column(
        SQLEnum(RetirementStatus), nullable=False, default=RetirementStatus.ANALYSIS_PENDING
    )
    diligence_responsible_id = Column(String(32), nullable=True)

    assigned_analyst_id = Column(String(64), nullable=True)
    last_analyst_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    case = relationship("Case", back_populates="retirement_case")
    history = relationship(
        "StatusHistory", back_populates="retirement_case", order_by="StatusHistory.id"
    )


class StatusHistory(Base):
    """Append-only audit log of retirement case status changes"""
    __tablename__ = "status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    retirement_case_id = Column(
        Integer, ForeignKey("retirement_cases.id"), nullable=False, index=True
    )
    previous_status = Column(SQLEnum(RetirementStatus), nullable=True)
    new_status = Column(SQLEnum(RetirementStatus), nullable=False)
    user_id = Column(String(64), nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    retirement_case = relationship("RetirementCase", back_populates="history")


class Job(Base):
    """Durable background job row"""
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(64), nullable=False)
    args = Column(JSON, nullable=False, default=dict)
    unique_key = Column(String(64), nullable=True)
    unique_slot = Column(String(64), nullable=True, unique=True)
    state = Column(SQLEnum(JobState), nullable=False, default=JobState.available)
    attempt = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=25)
    scheduled_at = Column(DateTime, nullable=False, default=utcnow)
    attempted_at = Column(DateTime, nullable=True)
    finalized_at = Column(DateTime, nullable=True)
    errors = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_jobs_state_scheduled", "state", "scheduled_at"),
        Index("ix_jobs_unique_key_created", "unique_key", "created_at"),
    )
