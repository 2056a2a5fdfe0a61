"""
RMRI orchestrator.

Drives a run from ``planning`` to a terminal state. Each iteration fans out
one micro job per paper, waits for all of them (the first failure aborts
the phase), then runs a single meso job and a single meta job. The meta
output's convergence verdict decides whether another iteration follows.

Example:
    ```python
    from rmri.orchestration import build_pipeline

    orchestrator = build_pipeline()
    report = await orchestrator.start("run-1", papers)
    await orchestrator.close()
    ```
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from rmri.config import RMRIConfig, get_config
from rmri.core.errors import AlreadyRunningError, NotRunningError, RunCancelledError
from rmri.core.llm import LLMRequestConfig
from rmri.core.workflow import AgentType, RunStatus
from rmri.db import get_session
from rmri.db.models import IterationStatus, ResultType
from rmri.db.operations import (
    create_agent,
    create_iteration,
    fail_open_agents,
    finish_iteration,
    get_run,
    insert_result,
    log_event,
    update_run_status,
)
from rmri.jobs.queue import JobQueue
from rmri.models.jobs import MesoJobPayload, MetaJobPayload, MicroJobPayload
from rmri.models.meso import MesoOutput
from rmri.models.meta import MetaOutput
from rmri.models.paper import Paper
from rmri.orchestration.registry import InMemoryRunRegistry, RunHandle, RunRegistry

logger = logging.getLogger(__name__)

FINAL_REPORT_TOP_GAPS = 10


class RMRIOrchestrator:
    """Iteration loop over the micro, meso and meta queues."""

    def __init__(
        self,
        micro_queue: JobQueue,
        meso_queue: JobQueue,
        meta_queue: JobQueue,
        registry: Optional[RunRegistry] = None,
        config: Optional[RMRIConfig] = None,
    ):
        self.micro_queue = micro_queue
        self.meso_queue = meso_queue
        self.meta_queue = meta_queue
        self.registry = registry or InMemoryRunRegistry()
        self.config = config or get_config()

    @property
    def queues(self) -> Dict[str, JobQueue]:
        return {
            AgentType.MICRO.value: self.micro_queue,
            AgentType.MESO.value: self.meso_queue,
            AgentType.META.value: self.meta_queue,
        }

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        run_id: str,
        papers: Sequence[Union[Paper, Dict[str, Any]]],
        llm_config: Optional[LLMRequestConfig] = None,
    ) -> Dict[str, Any]:
        """
        Execute a run to completion.

        The run record must already exist (see ``rmri.db.operations.create_run``).

        Returns:
            The final report, or a short status dict if the run was cancelled

        Raises:
            AlreadyRunningError: If ``run_id`` is already active
            ValueError: If the run record is missing or there are no papers
        """
        if self.registry.has(run_id):
            raise AlreadyRunningError(run_id)

        papers = self._prepare_papers(papers)
        if not papers:
            raise ValueError(f"Run {run_id} has no papers to process")

        defaults = self.config.orchestration
        with get_session() as session:
            run = get_run(session, run_id)
            if run is None:
                raise ValueError(f"Run {run_id} not found")
            max_iterations = run.max_iterations or defaults.max_iterations
            threshold = (
                run.convergence_threshold
                if run.convergence_threshold is not None
                else defaults.convergence_threshold
            )

        llm_config = llm_config or LLMRequestConfig(
            preferred_order=self.config.llm.preferred_order,
            max_tokens=self.config.llm.max_tokens,
            temperature=self.config.llm.temperature,
        )

        handle = RunHandle(
            run_id=run_id,
            total_papers=len(papers),
            max_iterations=max_iterations,
            convergence_threshold=threshold,
        )
        self.registry.set(run_id, handle)

        try:
            with get_session() as session:
                update_run_status(session, run_id, RunStatus.RUNNING, current_iteration=0, action="start")
            handle.workflow.transition_to(RunStatus.RUNNING, action="start")
            logger.info(
                f"Starting run {run_id}: {len(papers)} papers, "
                f"up to {max_iterations} iterations, threshold {threshold}"
            )
            self._log(run_id, "info", f"Run started with {len(papers)} papers")

            meso_output = meta_output = None
            for iteration in range(1, max_iterations + 1):
                meso_output, meta_output = await self._run_iteration(handle, iteration, papers, llm_config)

                if meta_output.convergence.converged:
                    logger.info(f"Run {run_id} converged at iteration {iteration}")
                    break
                if iteration < max_iterations and defaults.iteration_delay_seconds > 0:
                    await asyncio.sleep(defaults.iteration_delay_seconds)
                    self._ensure_active(handle)

            return self._finalize(handle, meso_output, meta_output)

        except RunCancelledError:
            logger.info(f"Run {run_id} stopped after cancellation")
            return {"run_id": run_id, "status": RunStatus.CANCELLED.value, "iterations": handle.current_iteration}

        except Exception as e:
            if handle.cancelled:
                logger.info(f"Run {run_id} stopped after cancellation: {e}")
                return {"run_id": run_id, "status": RunStatus.CANCELLED.value, "iterations": handle.current_iteration}
            self._fail_run(handle, e)
            raise

        finally:
            if self.registry.get(run_id) is handle:
                self.registry.delete(run_id)

    def cancel(self, run_id: str) -> int:
        """
        Cancel an active run.

        Queued jobs of the run are removed; jobs already executing finish
        but their results are ignored.

        Returns:
            Number of queued jobs removed

        Raises:
            NotRunningError: If the run is not active
        """
        handle = self.registry.get(run_id)
        if handle is None:
            raise NotRunningError(run_id)

        handle.cancelled = True
        self.registry.delete(run_id)

        with get_session() as session:
            update_run_status(session, run_id, RunStatus.CANCELLED, action="cancel")
        handle.workflow.transition_to(RunStatus.CANCELLED, action="cancel")

        removed = sum(queue.remove_jobs_for_run(run_id) for queue in self.queues.values())
        logger.info(f"Cancelled run {run_id}; removed {removed} queued jobs")
        self._log(run_id, "warning", f"Run cancelled; {removed} queued jobs removed")
        return removed

    def status(self, run_id: str) -> Optional[Dict[str, Any]]:
        handle = self.registry.get(run_id)
        return handle.to_dict() if handle else None

    def is_running(self, run_id: str) -> bool:
        return self.registry.has(run_id)

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    async def _run_iteration(
        self,
        handle: RunHandle,
        iteration: int,
        papers: List[Paper],
        llm_config: LLMRequestConfig,
    ):
        run_id = handle.run_id
        handle.current_iteration = iteration
        started = time.monotonic()

        with get_session() as session:
            create_iteration(session, run_id, iteration)
            update_run_status(
                session, run_id, RunStatus.RUNNING,
                current_iteration=iteration, action=f"iteration {iteration}",
            )
        handle.workflow.transition_to(RunStatus.RUNNING, action=f"iteration {iteration}")
        logger.info(f"Run {run_id}: iteration {iteration}/{handle.max_iterations}")

        try:
            handle.phase = AgentType.MICRO.value
            await self._run_phase(self.micro_queue, AgentType.MICRO, [
                MicroJobPayload(
                    run_id=run_id,
                    agent_id=f"micro-{run_id}-{iteration}-{paper.paper_id}",
                    iteration=iteration,
                    llm_config=llm_config,
                    paper=paper,
                )
                for paper in papers
            ])
            self._ensure_active(handle)

            handle.phase = AgentType.MESO.value
            meso_output: MesoOutput = (await self._run_phase(self.meso_queue, AgentType.MESO, [
                MesoJobPayload(
                    run_id=run_id,
                    agent_id=f"meso-{run_id}-{iteration}",
                    iteration=iteration,
                    llm_config=llm_config,
                )
            ]))[0]
            self._ensure_active(handle)

            handle.phase = AgentType.META.value
            meta_output: MetaOutput = (await self._run_phase(self.meta_queue, AgentType.META, [
                MetaJobPayload(
                    run_id=run_id,
                    agent_id=f"meta-{run_id}-{iteration}",
                    iteration=iteration,
                    llm_config=llm_config,
                    max_iterations=handle.max_iterations,
                    convergence_threshold=handle.convergence_threshold,
                )
            ]))[0]
            self._ensure_active(handle)

        except Exception as e:
            status = IterationStatus.CANCELLED if handle.cancelled else IterationStatus.FAILED
            message = "Run cancelled" if handle.cancelled else f"{handle.phase} phase failed: {e}"
            with get_session() as session:
                fail_open_agents(session, run_id, iteration, message)
                finish_iteration(session, run_id, iteration, status, error_message=message)
            if handle.cancelled:
                raise RunCancelledError(run_id) from e
            raise

        finally:
            handle.phase = None

        handle.last_convergence = meta_output.convergence
        with get_session() as session:
            finish_iteration(
                session, run_id, iteration, IterationStatus.COMPLETED,
                convergence_score=meta_output.convergence.similarity,
                converged=meta_output.convergence.converged,
                gaps_found=len(meta_output.ranked_gaps),
            )

        logger.info(
            f"Run {run_id}: iteration {iteration} done in {time.monotonic() - started:.1f}s "
            f"({meta_output.convergence.reason})"
        )
        self._log(
            run_id, "info", f"Iteration {iteration} completed",
            {
                "similarity": meta_output.convergence.similarity,
                "converged": meta_output.convergence.converged,
                "clusters": meso_output.total_clusters,
            },
        )
        return meso_output, meta_output

    async def _run_phase(self, queue: JobQueue, agent_type: AgentType, payloads: List[Any]) -> List[Any]:
        """
        Enqueue one job per payload and wait for all of them.

        The first failure removes the phase's remaining queued jobs and is
        re-raised.
        """
        with get_session() as session:
            for payload in payloads:
                create_agent(session, payload.agent_id, payload.run_id, payload.iteration, agent_type)

        jobs = [queue.add(payload, job_id=payload.agent_id) for payload in payloads]
        waiters = [asyncio.ensure_future(job.finished()) for job in jobs]

        done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_EXCEPTION)
        failed = next((w for w in waiters if w in done and w.exception() is not None), None)
        if failed is None:
            return [w.result() for w in waiters]

        for job in jobs:
            job.remove()
        for waiter in pending:
            waiter.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        raise failed.exception()

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _finalize(self, handle: RunHandle, meso_output: MesoOutput, meta_output: MetaOutput) -> Dict[str, Any]:
        report = build_final_report(handle.run_id, handle.current_iteration, meso_output, meta_output)

        with get_session() as session:
            insert_result(
                session,
                run_id=handle.run_id,
                result_type=ResultType.FINAL_REPORT,
                data=report,
                iteration_number=handle.current_iteration,
                confidence=meta_output.confidence,
            )
            update_run_status(
                session, handle.run_id, RunStatus.COMPLETED,
                current_iteration=handle.current_iteration, action="finalize",
            )
        handle.workflow.transition_to(RunStatus.COMPLETED, action="finalize")

        logger.info(
            f"Run {handle.run_id} completed after {handle.current_iteration} iterations "
            f"({len(meta_output.ranked_gaps)} ranked gaps)"
        )
        self._log(handle.run_id, "info", "Run completed", report["summary"])
        return report

    def _fail_run(self, handle: RunHandle, error: Exception):
        logger.error(f"Run {handle.run_id} failed: {error}")
        try:
            with get_session() as session:
                update_run_status(session, handle.run_id, RunStatus.FAILED, error_message=str(error), action="fail")
            handle.workflow.transition_to(RunStatus.FAILED, action="fail")
        except Exception as e:
            logger.error(f"Could not mark run {handle.run_id} failed: {e}")
        self._log(handle.run_id, "error", f"Run failed: {error}", {"error_type": type(error).__name__})

    def _ensure_active(self, handle: RunHandle):
        if handle.cancelled or self.registry.get(handle.run_id) is not handle:
            raise RunCancelledError(handle.run_id)

    # ------------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------------

    def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        return {name: queue.get_job_counts() for name, queue in self.queues.items()}

    def health_check(self) -> Dict[str, Any]:
        """Aggregate queue counts; ``degraded`` when too many jobs have failed."""
        stats = self.get_queue_stats()
        totals = {
            state: sum(counts.get(state, 0) for counts in stats.values())
            for state in ("active", "waiting", "delayed", "failed")
        }
        threshold = self.config.orchestration.failed_jobs_degraded_threshold
        return {
            "status": "degraded" if totals["failed"] > threshold else "healthy",
            "active_runs": len(self.registry.list()),
            "queues": stats,
            "totals": totals,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def cleanup(self, grace_seconds: float = 0.0) -> int:
        """Forget finished jobs in every queue. Returns the number dropped."""
        cleaned = sum(queue.clean(grace_seconds) for queue in self.queues.values())
        logger.info(f"Cleaned {cleaned} finished jobs")
        return cleaned

    async def close(self):
        for queue in self.queues.values():
            await queue.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _prepare_papers(papers: Sequence[Union[Paper, Dict[str, Any]]]) -> List[Paper]:
        # only papers carrying an id or DOI can be recognised as repeats;
        # slug collisions keep both papers under index-suffixed ids
        prepared: Dict[str, Paper] = {}
        for index, item in enumerate(papers):
            paper = item if isinstance(item, Paper) else Paper.model_validate(item)
            if paper.paper_id in prepared:
                if paper.has_explicit_id:
                    logger.warning(f"Skipping duplicate paper {paper.paper_id}")
                    continue
                paper = paper.model_copy(update={"id": f"{paper.paper_id}_{index}"})
            prepared[paper.paper_id] = paper
        return list(prepared.values())

    @staticmethod
    def _log(run_id: str, level: str, message: str, metadata: Optional[Dict[str, Any]] = None):
        try:
            with get_session() as session:
                log_event(session, run_id, level, message, metadata=metadata)
        except Exception as e:
            logger.warning(f"Failed to write log entry for run {run_id}: {e}")


def build_final_report(
    run_id: str,
    iterations: int,
    meso_output: MesoOutput,
    meta_output: MetaOutput,
) -> Dict[str, Any]:
    """Assemble the persisted report from the last iteration's outputs."""
    convergence = meta_output.convergence
    return {
        "run_id": run_id,
        "summary": {
            "total_iterations": iterations,
            "converged": convergence.converged,
            "convergence_similarity": convergence.similarity,
            "convergence_reason": convergence.reason,
            "total_papers": meso_output.total_papers,
            "total_clusters": meta_output.statistics.total_clusters,
            "top_gap_count": len(meta_output.ranked_gaps),
            "confidence": meta_output.confidence,
        },
        "top_gaps": [g.model_dump(mode="json") for g in meta_output.ranked_gaps[:FINAL_REPORT_TOP_GAPS]],
        "research_directions": [d.model_dump(mode="json") for d in meta_output.recommended_directions],
        "research_frontiers": [f.model_dump(mode="json") for f in meta_output.research_frontiers],
        "cross_domain_patterns": [p.model_dump(mode="json") for p in meta_output.cross_domain_patterns],
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
