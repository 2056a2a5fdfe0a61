"""In-process job queue used to run agent processors."""

from rmri.jobs.queue import Job, JobOptions, JobQueue, JobState

__all__ = ["Job", "JobOptions", "JobQueue", "JobState"]
