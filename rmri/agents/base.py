"""
Shared job handling for agent processors.

``process`` is the queue-facing entry point: it moves the agent record
through active → completed, writes the diagnostic log trail, and on error
marks the record failed only when no retry remains before re-raising.
Subclasses implement ``run``.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from pydantic import BaseModel

from rmri.context.store import ContextStore
from rmri.core.workflow import AgentStatus, AgentType
from rmri.db import get_session
from rmri.db.models import ResultType
from rmri.db.operations import insert_result, log_event, update_agent_status
from rmri.jobs.queue import Job

logger = logging.getLogger(__name__)


class BaseAgentProcessor(ABC):
    """Template for micro, meso and meta processors."""

    agent_type: AgentType

    def __init__(self, context_store: ContextStore):
        self.context_store = context_store

    async def process(self, job: Job) -> BaseModel:
        """Run one job attempt."""
        payload = job.data
        started = time.monotonic()

        self._log(
            payload.run_id, payload.agent_id, "info",
            f"{self.agent_type.value} agent started (iteration {payload.iteration}, attempt {job.attempts_made})"
        )
        with get_session() as session:
            update_agent_status(
                session, payload.agent_id, AgentStatus.ACTIVE,
                metadata={"attempt": job.attempts_made},
            )

        try:
            output = await self.run(payload)
        except Exception as e:
            logger.error(f"{self.agent_type.value} agent {payload.agent_id} failed: {e}")
            self._log(
                payload.run_id, payload.agent_id, "error",
                f"{self.agent_type.value} agent failed: {e}",
                {"attempt": job.attempts_made, "error_type": type(e).__name__},
            )
            if job.is_final_attempt:
                with get_session() as session:
                    update_agent_status(
                        session, payload.agent_id, AgentStatus.FAILED,
                        error_message=str(e),
                        processing_time_ms=int((time.monotonic() - started) * 1000),
                    )
            raise

        elapsed_ms = int((time.monotonic() - started) * 1000)
        with get_session() as session:
            update_agent_status(
                session, payload.agent_id, AgentStatus.COMPLETED,
                processing_time_ms=elapsed_ms,
                metadata={"confidence": getattr(output, "confidence", None)},
            )
        self._log(
            payload.run_id, payload.agent_id, "info",
            f"{self.agent_type.value} agent completed in {elapsed_ms}ms"
        )
        return output

    @abstractmethod
    async def run(self, payload: Any) -> BaseModel:
        """Produce this tier's output for ``payload``."""

    def _store_result(
        self,
        payload: Any,
        result_type: ResultType,
        data: Dict[str, Any],
        confidence: Optional[float] = None,
    ):
        with get_session() as session:
            insert_result(
                session,
                run_id=payload.run_id,
                result_type=result_type,
                data=data,
                agent_id=payload.agent_id,
                iteration_number=payload.iteration,
                confidence=confidence,
            )

    @staticmethod
    def _log(run_id: str, agent_id: Optional[str], level: str, message: str, metadata: Optional[Dict] = None):
        """Write to the run's log table; failures here never fail the job."""
        try:
            with get_session() as session:
                log_event(session, run_id, level, message, agent_id=agent_id, metadata=metadata)
        except Exception as e:
            logger.warning(f"Failed to write log entry for run {run_id}: {e}")
