"""
Asyncio job queue with retries, exponential backoff and per-attempt timeouts.

Each submitted job gets a future; ``await job.finished()`` yields the
processor's return value, or raises the error from the last attempt.

States: waiting → active → (completed | failed), with active → delayed →
waiting between attempts. Waiting and delayed jobs can be removed; active
jobs run to completion.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from rmri.core.errors import JobRemovedError, JobTimeoutError

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"
    REMOVED = "removed"


FINISHED_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.REMOVED})


@dataclass
class JobOptions:
    """Retry policy. ``attempts`` is the total number of tries."""
    attempts: int = 3
    backoff_seconds: float = 2.0
    timeout_seconds: float = 300.0

    def backoff_delay(self, attempts_made: int) -> float:
        """Delay before the next attempt after ``attempts_made`` failures."""
        return self.backoff_seconds * (2 ** (attempts_made - 1))


def _consume_exception(future: asyncio.Future):
    # mark the exception retrieved so abandoned jobs don't warn at GC
    if not future.cancelled():
        future.exception()


class Job:
    """A unit of work tracked by a ``JobQueue``."""

    def __init__(self, queue: "JobQueue", job_id: str, data: Any):
        self.queue = queue
        self.id = job_id
        self.data = data
        self.state = JobState.WAITING
        self.attempts_made = 0
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.created_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None

        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._future.add_done_callback(_consume_exception)
        self._delay_handle: Optional[asyncio.TimerHandle] = None

    @property
    def is_final_attempt(self) -> bool:
        """True while the current attempt is the last one allowed."""
        return self.attempts_made >= self.queue.options.attempts

    async def finished(self) -> Any:
        """Wait for the job to complete and return its result."""
        return await asyncio.shield(self._future)

    def remove(self) -> bool:
        """Remove the job if it has not started. Returns True if removed."""
        return self.queue.remove(self.id)

    def __repr__(self) -> str:
        return f"Job(id={self.id!r}, queue={self.queue.name!r}, state={self.state.value})"


class JobQueue:
    """
    Named queue bound to one processor coroutine.

    Example:
        ```python
        queue = JobQueue("micro", processor.process, JobOptions(attempts=3), concurrency=10)
        job = queue.add(payload, job_id=payload.agent_id)
        output = await job.finished()
        await queue.close()
        ```
    """

    def __init__(
        self,
        name: str,
        processor: Callable[[Job], Awaitable[Any]],
        options: Optional[JobOptions] = None,
        concurrency: int = 1,
    ):
        self.name = name
        self.processor = processor
        self.options = options or JobOptions()
        self.concurrency = concurrency

        self._jobs: Dict[str, Job] = {}
        self._waiting: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _ensure_started(self):
        if self._workers:
            return
        self._waiting = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(), name=f"{self.name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.debug(f"Queue {self.name} started {self.concurrency} workers")

    async def close(self):
        """Stop the workers. Unfinished jobs are removed."""
        for job in list(self._jobs.values()):
            if job.state in (JobState.WAITING, JobState.DELAYED):
                self.remove(job.id)
        for worker in self._workers:
            worker.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._waiting = None

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def add(self, data: Any, job_id: Optional[str] = None) -> Job:
        """Enqueue a job. Must be called from a running event loop."""
        self._ensure_started()
        job_id = job_id or str(uuid.uuid4())
        if job_id in self._jobs and self._jobs[job_id].state not in FINISHED_STATES:
            raise ValueError(f"Job {job_id} is already queued in {self.name}")

        job = Job(self, job_id, data)
        self._jobs[job_id] = job
        self._waiting.put_nowait(job)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_jobs(self, states: Optional[Iterable[JobState]] = None) -> List[Job]:
        wanted = set(states) if states is not None else None
        return [j for j in self._jobs.values() if wanted is None or j.state in wanted]

    def get_job_counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState if state != JobState.REMOVED}
        for job in self._jobs.values():
            if job.state in (JobState.REMOVED,):
                continue
            counts[job.state.value] += 1
        return counts

    def remove(self, job_id: str) -> bool:
        """Remove a waiting or delayed job; its waiter gets ``JobRemovedError``."""
        job = self._jobs.get(job_id)
        if job is None or job.state not in (JobState.WAITING, JobState.DELAYED):
            return False

        if job._delay_handle is not None:
            job._delay_handle.cancel()
            job._delay_handle = None
        job.state = JobState.REMOVED
        job.finished_at = datetime.now(timezone.utc)
        del self._jobs[job_id]
        if not job._future.done():
            job._future.set_exception(JobRemovedError(job_id))
        logger.debug(f"Removed job {job_id} from {self.name}")
        return True

    def remove_jobs_for_run(self, run_id: str) -> int:
        """Remove every waiting or delayed job whose payload belongs to ``run_id``."""
        removed = 0
        for job in list(self._jobs.values()):
            if getattr(job.data, "run_id", None) == run_id and self.remove(job.id):
                removed += 1
        return removed

    def clean(self, grace_seconds: float = 0.0, states: Iterable[JobState] = (JobState.COMPLETED, JobState.FAILED)) -> int:
        """Forget finished jobs older than ``grace_seconds``. Returns the count."""
        cutoff = datetime.now(timezone.utc).timestamp() - grace_seconds
        wanted = set(states)
        stale = [
            job_id for job_id, job in self._jobs.items()
            if job.state in wanted and job.finished_at is not None
            and job.finished_at.timestamp() <= cutoff
        ]
        for job_id in stale:
            del self._jobs[job_id]
        return len(stale)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _worker(self):
        while True:
            job = await self._waiting.get()
            try:
                if job.state == JobState.WAITING:
                    await self._run(job)
            finally:
                self._waiting.task_done()

    def _requeue(self, job: Job):
        job._delay_handle = None
        if job.state != JobState.DELAYED or self._waiting is None:
            return
        job.state = JobState.WAITING
        self._waiting.put_nowait(job)

    async def _run(self, job: Job):
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        timeout = self.options.timeout_seconds

        try:
            result = await asyncio.wait_for(self.processor(job), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            error: BaseException = JobTimeoutError(job.id, timeout)
        except Exception as e:
            error = e
        else:
            job.state = JobState.COMPLETED
            job.result = result
            job.finished_at = datetime.now(timezone.utc)
            if not job._future.done():
                job._future.set_result(result)
            return

        job.error = error
        if job.attempts_made < self.options.attempts:
            delay = self.options.backoff_delay(job.attempts_made)
            logger.warning(
                f"Job {job.id} in {self.name} failed (attempt {job.attempts_made}/"
                f"{self.options.attempts}), retrying in {delay:.1f}s: {error}"
            )
            job.state = JobState.DELAYED
            job._delay_handle = asyncio.get_running_loop().call_later(delay, self._requeue, job)
            return

        logger.error(f"Job {job.id} in {self.name} failed after {job.attempts_made} attempts: {error}")
        job.state = JobState.FAILED
        job.finished_at = datetime.now(timezone.utc)
        if not job._future.done():
            job._future.set_exception(error)
