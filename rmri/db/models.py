"""
SQLAlchemy models for runs, iterations, agents, results, logs and the
context store.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from rmri.core.workflow import AgentStatus, AgentType, RunStatus

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class ResultType(str, enum.Enum):
    SYNTHESIS = "synthesis"
    GAPS = "gaps"
    FINAL_REPORT = "final_report"


class IterationStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Run(Base):
    """One research request."""

    __tablename__ = "runs"

    id = Column(String, primary_key=True)
    query = Column(Text, nullable=True)
    status = Column(Enum(RunStatus), nullable=False, default=RunStatus.PLANNING)
    current_iteration = Column(Integer, nullable=False, default=0)
    max_iterations = Column(Integer, nullable=True)
    convergence_threshold = Column(Float, nullable=True)
    total_papers = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    iterations = relationship("IterationRecord", back_populates="run", cascade="all, delete-orphan")
    agents = relationship("AgentRecord", back_populates="run", cascade="all, delete-orphan")
    results = relationship("ResultRecord", back_populates="run", cascade="all, delete-orphan")


class IterationRecord(Base):
    __tablename__ = "iterations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, ForeignKey("runs.id"), nullable=False, index=True)
    iteration_number = Column(Integer, nullable=False)
    status = Column(Enum(IterationStatus), nullable=False, default=IterationStatus.RUNNING)
    convergence_score = Column(Float, nullable=True)
    converged = Column(Boolean, nullable=False, default=False)
    gaps_found = Column(Integer, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    run = relationship("Run", back_populates="iterations")

    __table_args__ = (Index("ix_iterations_run_number", "run_id", "iteration_number", unique=True),)


class AgentRecord(Base):
    """One unit of work: a paper (micro) or an iteration's meso/meta job."""

    __tablename__ = "agents"

    id = Column(String, primary_key=True)
    run_id = Column(String, ForeignKey("runs.id"), nullable=False, index=True)
    iteration_number = Column(Integer, nullable=False)
    agent_type = Column(Enum(AgentType), nullable=False)
    status = Column(Enum(AgentStatus), nullable=False, default=AgentStatus.PENDING)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    agent_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    run = relationship("Run", back_populates="agents")


class ResultRecord(Base):
    __tablename__ = "results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, ForeignKey("runs.id"), nullable=False, index=True)
    agent_id = Column(String, nullable=True)
    iteration_number = Column(Integer, nullable=True)
    result_type = Column(Enum(ResultType), nullable=False)
    data = Column(JSON, nullable=False)
    confidence = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    run = relationship("Run", back_populates="results")


class LogRecord(Base):
    __tablename__ = "logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, nullable=False, index=True)
    agent_id = Column(String, nullable=True)
    level = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    log_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class ContextEntry(Base):
    """One version of a context blob; the payload lives in an artifact file."""

    __tablename__ = "contexts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, nullable=False)
    agent_id = Column(String, nullable=False)
    context_key = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    artifact_path = Column(String, nullable=False)
    size_bytes = Column(Integer, nullable=False, default=0)
    summary = Column(Text, nullable=True)
    context_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_contexts_lookup", "run_id", "agent_id", "context_key"),
        Index("ix_contexts_version", "run_id", "agent_id", "context_key", "version", unique=True),
    )
