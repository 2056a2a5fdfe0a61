"""
CRUD operations for run bookkeeping.

Every function takes an open ``Session`` as its first argument and commits
its own changes.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import logging

from sqlalchemy.orm import Session

from rmri.core.workflow import (
    AgentStatus,
    AgentType,
    RunStatus,
    RunWorkflow,
    TERMINAL_AGENT_STATES,
    TERMINAL_RUN_STATES,
)
from rmri.db.models import (
    AgentRecord,
    IterationRecord,
    IterationStatus,
    LogRecord,
    ResultRecord,
    ResultType,
    Run,
)


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# RUN CRUD
# ============================================================================

def create_run(
    session: Session,
    id: str,
    query: Optional[str] = None,
    max_iterations: Optional[int] = None,
    convergence_threshold: Optional[float] = None,
    total_papers: int = 0,
) -> Run:
    """Create a new run in ``planning`` state."""
    run = Run(
        id=id,
        query=query,
        status=RunStatus.PLANNING,
        max_iterations=max_iterations,
        convergence_threshold=convergence_threshold,
        total_papers=total_papers,
    )
    session.add(run)
    session.commit()
    session.refresh(run)

    logger.info(f"Created run {id}")
    return run


def get_run(session: Session, run_id: str) -> Optional[Run]:
    """Get run by ID."""
    return session.query(Run).filter(Run.id == run_id).first()


def update_run_status(
    session: Session,
    run_id: str,
    status: RunStatus,
    current_iteration: Optional[int] = None,
    error_message: Optional[str] = None,
    action: str = "",
) -> Run:
    """
    Move a run to ``status``.

    The change is validated against ``RunWorkflow.ALLOWED_TRANSITIONS``.

    Raises:
        ValueError: If the run does not exist
        InvalidTransitionError: If the run cannot move to ``status``
    """
    run = get_run(session, run_id)
    if not run:
        raise ValueError(f"Run {run_id} not found")

    RunWorkflow(run_id, run.status).transition_to(status, action=action)

    run.status = status
    if current_iteration is not None:
        run.current_iteration = current_iteration
    if error_message is not None:
        run.error_message = error_message
    if status in TERMINAL_RUN_STATES:
        run.completed_at = _utcnow()
    session.commit()
    session.refresh(run)

    logger.debug(f"Updated run {run_id} status to {status.value}")
    return run


# ============================================================================
# ITERATION CRUD
# ============================================================================

def create_iteration(session: Session, run_id: str, iteration_number: int) -> IterationRecord:
    """Open an iteration record in ``running`` state."""
    record = IterationRecord(
        run_id=run_id,
        iteration_number=iteration_number,
        status=IterationStatus.RUNNING,
    )
    session.add(record)
    session.commit()
    session.refresh(record)
    return record


def get_iteration(session: Session, run_id: str, iteration_number: int) -> Optional[IterationRecord]:
    return (
        session.query(IterationRecord)
        .filter(
            IterationRecord.run_id == run_id,
            IterationRecord.iteration_number == iteration_number,
        )
        .first()
    )


def finish_iteration(
    session: Session,
    run_id: str,
    iteration_number: int,
    status: IterationStatus,
    convergence_score: Optional[float] = None,
    converged: bool = False,
    gaps_found: Optional[int] = None,
    error_message: Optional[str] = None,
) -> IterationRecord:
    """Close an iteration record with its outcome."""
    record = get_iteration(session, run_id, iteration_number)
    if not record:
        raise ValueError(f"Iteration {iteration_number} of run {run_id} not found")

    record.status = status
    record.convergence_score = convergence_score
    record.converged = converged
    record.gaps_found = gaps_found
    record.error_message = error_message
    record.completed_at = _utcnow()
    started = record.started_at
    if started is not None:
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        record.processing_time_ms = int((record.completed_at - started).total_seconds() * 1000)
    session.commit()
    session.refresh(record)
    return record


def list_iterations(session: Session, run_id: str) -> List[IterationRecord]:
    return (
        session.query(IterationRecord)
        .filter(IterationRecord.run_id == run_id)
        .order_by(IterationRecord.iteration_number)
        .all()
    )


# ============================================================================
# AGENT CRUD
# ============================================================================

def create_agent(
    session: Session,
    id: str,
    run_id: str,
    iteration_number: int,
    agent_type: AgentType,
    metadata: Optional[Dict[str, Any]] = None,
) -> AgentRecord:
    """Create a ``pending`` agent record."""
    agent = AgentRecord(
        id=id,
        run_id=run_id,
        iteration_number=iteration_number,
        agent_type=agent_type,
        status=AgentStatus.PENDING,
        agent_metadata=metadata or {},
    )
    session.add(agent)
    session.commit()
    session.refresh(agent)
    return agent


def get_agent(session: Session, agent_id: str) -> Optional[AgentRecord]:
    return session.query(AgentRecord).filter(AgentRecord.id == agent_id).first()


def update_agent_status(
    session: Session,
    agent_id: str,
    status: AgentStatus,
    error_message: Optional[str] = None,
    processing_time_ms: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Update an agent record.

    Records in a terminal status are left untouched.

    Returns:
        True if the record was updated
    """
    agent = get_agent(session, agent_id)
    if not agent:
        raise ValueError(f"Agent {agent_id} not found")

    if agent.status in TERMINAL_AGENT_STATES:
        logger.debug(f"Agent {agent_id} already {agent.status.value}; ignoring {status.value}")
        return False

    agent.status = status
    now = _utcnow()
    if status == AgentStatus.ACTIVE and agent.started_at is None:
        agent.started_at = now
    if status in TERMINAL_AGENT_STATES:
        agent.completed_at = now
    if processing_time_ms is not None:
        agent.processing_time_ms = processing_time_ms
    if error_message is not None:
        agent.error_message = error_message
    if metadata:
        agent.agent_metadata = {**(agent.agent_metadata or {}), **metadata}
    session.commit()
    return True


def fail_open_agents(
    session: Session,
    run_id: str,
    iteration_number: int,
    error_message: str,
    agent_type: Optional[AgentType] = None,
) -> int:
    """Mark every non-terminal agent of an iteration as failed. Returns the count."""
    query = session.query(AgentRecord).filter(
        AgentRecord.run_id == run_id,
        AgentRecord.iteration_number == iteration_number,
        AgentRecord.status.in_([AgentStatus.PENDING, AgentStatus.ACTIVE]),
    )
    if agent_type is not None:
        query = query.filter(AgentRecord.agent_type == agent_type)

    now = _utcnow()
    agents = query.all()
    for agent in agents:
        agent.status = AgentStatus.FAILED
        agent.completed_at = now
        agent.error_message = agent.error_message or error_message
    session.commit()
    return len(agents)


def list_agents(
    session: Session,
    run_id: str,
    iteration_number: Optional[int] = None,
    agent_type: Optional[AgentType] = None,
) -> List[AgentRecord]:
    query = session.query(AgentRecord).filter(AgentRecord.run_id == run_id)
    if iteration_number is not None:
        query = query.filter(AgentRecord.iteration_number == iteration_number)
    if agent_type is not None:
        query = query.filter(AgentRecord.agent_type == agent_type)
    return query.order_by(AgentRecord.created_at).all()


# ============================================================================
# RESULT CRUD
# ============================================================================

def insert_result(
    session: Session,
    run_id: str,
    result_type: ResultType,
    data: Dict[str, Any],
    agent_id: Optional[str] = None,
    iteration_number: Optional[int] = None,
    confidence: Optional[float] = None,
) -> ResultRecord:
    """Store a processor output or the final report."""
    result = ResultRecord(
        run_id=run_id,
        agent_id=agent_id,
        iteration_number=iteration_number,
        result_type=result_type,
        data=data,
        confidence=confidence,
    )
    session.add(result)
    session.commit()
    session.refresh(result)
    return result


def list_results(
    session: Session,
    run_id: str,
    result_type: Optional[ResultType] = None,
    iteration_number: Optional[int] = None,
) -> List[ResultRecord]:
    query = session.query(ResultRecord).filter(ResultRecord.run_id == run_id)
    if result_type is not None:
        query = query.filter(ResultRecord.result_type == result_type)
    if iteration_number is not None:
        query = query.filter(ResultRecord.iteration_number == iteration_number)
    return query.order_by(ResultRecord.id).all()


def get_final_report(session: Session, run_id: str) -> Optional[ResultRecord]:
    return (
        session.query(ResultRecord)
        .filter(ResultRecord.run_id == run_id, ResultRecord.result_type == ResultType.FINAL_REPORT)
        .order_by(ResultRecord.id.desc())
        .first()
    )


# ============================================================================
# LOGS
# ============================================================================

def log_event(
    session: Session,
    run_id: str,
    level: str,
    message: str,
    agent_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> LogRecord:
    """Append a line to the run's diagnostic trail."""
    record = LogRecord(
        run_id=run_id,
        agent_id=agent_id,
        level=level,
        message=message,
        log_metadata=metadata or {},
    )
    session.add(record)
    session.commit()
    return record


def list_logs(session: Session, run_id: str, agent_id: Optional[str] = None) -> List[LogRecord]:
    query = session.query(LogRecord).filter(LogRecord.run_id == run_id)
    if agent_id is not None:
        query = query.filter(LogRecord.agent_id == agent_id)
    return query.order_by(LogRecord.id).all()
