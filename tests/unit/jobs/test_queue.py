"""
Tests for the asyncio job queue.
"""

import asyncio
from types import SimpleNamespace

import pytest

from rmri.core.errors import JobRemovedError, JobTimeoutError
from rmri.jobs.queue import JobOptions, JobQueue, JobState


FAST = JobOptions(attempts=3, backoff_seconds=0.01, timeout_seconds=1.0)


@pytest.fixture
async def make_queue():
    queues = []

    def _make(processor, options=FAST, concurrency=1, name="test"):
        queue = JobQueue(name, processor, options, concurrency=concurrency)
        queues.append(queue)
        return queue

    yield _make
    for queue in queues:
        await queue.close()


class TestJobOptions:

    def test_exponential_backoff(self):
        options = JobOptions(attempts=3, backoff_seconds=2.0)
        assert [options.backoff_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


class TestJobQueue:

    async def test_completes_with_result(self, make_queue):
        async def double(job):
            return job.data * 2

        queue = make_queue(double)
        job = queue.add(21, job_id="j1")

        assert await job.finished() == 42
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 1
        assert queue.get_job_counts()["completed"] == 1

    async def test_retries_then_succeeds(self, make_queue):
        async def flaky(job):
            if job.attempts_made < 3:
                raise RuntimeError("transient")
            return "ok"

        queue = make_queue(flaky)
        job = queue.add(None)

        assert await job.finished() == "ok"
        assert job.attempts_made == 3

    async def test_fails_after_all_attempts(self, make_queue):
        seen = []

        async def broken(job):
            seen.append((job.attempts_made, job.is_final_attempt))
            raise RuntimeError("permanent")

        queue = make_queue(broken, JobOptions(attempts=2, backoff_seconds=0.01, timeout_seconds=1.0))
        job = queue.add(None)

        with pytest.raises(RuntimeError, match="permanent"):
            await job.finished()
        assert job.state == JobState.FAILED
        assert seen == [(1, False), (2, True)]
        assert queue.get_job_counts()["failed"] == 1

    async def test_timeout_is_a_failure(self, make_queue):
        async def slow(job):
            await asyncio.sleep(5)

        queue = make_queue(slow, JobOptions(attempts=1, backoff_seconds=0.0, timeout_seconds=0.05))
        job = queue.add(None, job_id="slow")

        with pytest.raises(JobTimeoutError) as exc_info:
            await job.finished()
        assert exc_info.value.job_id == "slow"

    async def test_concurrency(self, make_queue):
        running = 0
        peak = 0

        async def track(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1

        queue = make_queue(track, concurrency=3)
        jobs = [queue.add(i) for i in range(6)]
        await asyncio.gather(*(job.finished() for job in jobs))

        assert peak == 3

    async def test_duplicate_active_id_rejected(self, make_queue):
        gate = asyncio.Event()

        async def wait(job):
            await gate.wait()

        queue = make_queue(wait)
        job = queue.add(None, job_id="dup")
        with pytest.raises(ValueError):
            queue.add(None, job_id="dup")
        gate.set()
        await job.finished()

    async def test_remove_waiting_job(self, make_queue):
        gate = asyncio.Event()

        async def wait(job):
            await gate.wait()
            return job.data

        queue = make_queue(wait, concurrency=1)
        first = queue.add("first")
        second = queue.add("second")
        await asyncio.sleep(0)

        assert second.remove()
        with pytest.raises(JobRemovedError):
            await second.finished()

        gate.set()
        assert await first.finished() == "first"
        assert queue.get_job(second.id) is None

    async def test_active_job_cannot_be_removed(self, make_queue):
        gate = asyncio.Event()
        started = asyncio.Event()

        async def wait(job):
            started.set()
            await gate.wait()
            return "done"

        queue = make_queue(wait)
        job = queue.add(None)
        await started.wait()

        assert not job.remove()
        gate.set()
        assert await job.finished() == "done"

    async def test_remove_jobs_for_run(self, make_queue):
        gate = asyncio.Event()

        async def wait(job):
            await gate.wait()

        queue = make_queue(wait, concurrency=1)
        blocker = queue.add(SimpleNamespace(run_id="other"))
        mine = [queue.add(SimpleNamespace(run_id="run-1")) for _ in range(3)]
        theirs = queue.add(SimpleNamespace(run_id="other"))
        await asyncio.sleep(0)

        assert queue.remove_jobs_for_run("run-1") == 3
        for job in mine:
            assert job.state == JobState.REMOVED

        gate.set()
        await blocker.finished()
        await theirs.finished()

    async def test_delayed_job_can_be_removed(self, make_queue):
        async def broken(job):
            raise RuntimeError("nope")

        queue = make_queue(broken, JobOptions(attempts=3, backoff_seconds=10.0, timeout_seconds=1.0))
        job = queue.add(None)
        while job.state != JobState.DELAYED:
            await asyncio.sleep(0.001)

        assert queue.get_job_counts()["delayed"] == 1
        assert job.remove()
        with pytest.raises(JobRemovedError):
            await job.finished()

    async def test_clean_forgets_finished(self, make_queue):
        async def ok(job):
            return True

        queue = make_queue(ok)
        jobs = [queue.add(i) for i in range(3)]
        await asyncio.gather(*(j.finished() for j in jobs))

        assert queue.clean() == 3
        assert queue.get_job_counts()["completed"] == 0
