"""
Registry of in-flight runs.

The orchestrator owns one registry instance; a run is registered for the
duration of ``start`` and removed on completion, failure or cancellation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from rmri.core.workflow import RunStatus, RunWorkflow
from rmri.models.meta import ConvergenceResult


@dataclass
class RunHandle:
    """In-memory state of one active run."""
    run_id: str
    total_papers: int
    max_iterations: int
    convergence_threshold: float
    workflow: Optional[RunWorkflow] = None
    current_iteration: int = 0
    phase: Optional[str] = None
    cancelled: bool = False
    last_convergence: Optional[ConvergenceResult] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.workflow is None:
            self.workflow = RunWorkflow(self.run_id, RunStatus.PLANNING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.workflow.current_state.value,
            "current_iteration": self.current_iteration,
            "max_iterations": self.max_iterations,
            "phase": self.phase,
            "total_papers": self.total_papers,
            "convergence_threshold": self.convergence_threshold,
            "last_convergence": self.last_convergence.model_dump() if self.last_convergence else None,
            "started_at": self.started_at.isoformat(),
            "seconds_running": round(self.workflow.seconds_running(), 3),
            "transitions": self.workflow.recent_transitions(),
        }


class RunRegistry(ABC):
    """Lookup of active runs by id."""

    @abstractmethod
    def get(self, run_id: str) -> Optional[RunHandle]:
        pass

    @abstractmethod
    def set(self, run_id: str, handle: RunHandle):
        pass

    @abstractmethod
    def delete(self, run_id: str) -> bool:
        pass

    @abstractmethod
    def list(self) -> List[RunHandle]:
        pass

    def has(self, run_id: str) -> bool:
        return self.get(run_id) is not None


class InMemoryRunRegistry(RunRegistry):
    """Process-local registry backed by a dict."""

    def __init__(self):
        self._runs: Dict[str, RunHandle] = {}

    def get(self, run_id: str) -> Optional[RunHandle]:
        return self._runs.get(run_id)

    def set(self, run_id: str, handle: RunHandle):
        self._runs[run_id] = handle

    def delete(self, run_id: str) -> bool:
        return self._runs.pop(run_id, None) is not None

    def list(self) -> List[RunHandle]:
        return list(self._runs.values())

    def __len__(self) -> int:
        return len(self._runs)
