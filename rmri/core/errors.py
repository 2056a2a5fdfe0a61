"""
Exception taxonomy for the RMRI pipeline.

Extraction-level problems (``LLMFallbackExhaustedError``,
``MalformedLLMOutputError``) are recovered inside the micro processor.
Everything else propagates to the orchestrator and fails the run.
"""

from typing import Optional


class RMRIError(Exception):
    """Base class for all pipeline errors."""


class AlreadyRunningError(RMRIError):
    """A run with this id is already active."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} is already running")


class NotRunningError(RMRIError):
    """No active run with this id."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} is not running")


class NoInputsError(RMRIError):
    """A processor found nothing to consume in the context store."""

    def __init__(self, run_id: str, iteration: int, what: str):
        self.run_id = run_id
        self.iteration = iteration
        self.what = what
        super().__init__(f"No {what} found for run {run_id}, iteration {iteration}")


class JobTimeoutError(RMRIError):
    """A job attempt exceeded its hard timeout."""

    def __init__(self, job_id: str, timeout: float):
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"Job {job_id} timed out after {timeout:.1f}s")


class JobRemovedError(RMRIError):
    """A job was removed from its queue before it ran."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} was removed from the queue")


class RunCancelledError(RMRIError):
    """The run was cancelled while a phase was in flight."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} was cancelled")


class InvalidTransitionError(RMRIError, ValueError):
    """A run status change that the state machine does not allow."""


class ContextStoreError(RMRIError):
    """Invalid write or read against the context store."""


class ProviderAPIError(RMRIError):
    """A single LLM provider failed."""

    def __init__(self, provider: str, message: str, raw_error: Optional[Exception] = None):
        self.provider = provider
        self.raw_error = raw_error
        super().__init__(f"[{provider}] {message}")


class LLMFallbackExhaustedError(RMRIError):
    """Every provider in the preferred order failed."""

    def __init__(self, errors: Optional[dict] = None):
        self.errors = errors or {}
        detail = "; ".join(f"{name}: {err}" for name, err in self.errors.items())
        super().__init__(f"All LLM providers failed{': ' + detail if detail else ''}")


class MalformedLLMOutputError(RMRIError):
    """LLM output could not be decoded into the expected structure."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)
