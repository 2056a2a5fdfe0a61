"""
Run state machine.

planning → running → {completed | failed | cancelled}

``running`` is re-entered once per iteration; terminal states have no exits.
"""

from enum import Enum
from typing import List, Dict, Optional, Any
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import logging

from rmri.core.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    """Lifecycle states of a run."""

    PLANNING = "planning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class AgentStatus(str, Enum):
    """Lifecycle states of an agent record."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentType(str, Enum):
    """The three processing tiers."""

    MICRO = "micro"
    MESO = "meso"
    META = "meta"


TERMINAL_RUN_STATES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})
TERMINAL_AGENT_STATES = frozenset({AgentStatus.COMPLETED, AgentStatus.FAILED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunTransition(BaseModel):
    """A transition between run states."""

    from_state: RunStatus
    to_state: RunStatus
    action: str
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RunWorkflow:
    """
    State machine for a single run.

    Validates transitions and keeps a transition history so the
    orchestrator can report how long a run has been running.
    """

    ALLOWED_TRANSITIONS = {
        RunStatus.PLANNING: [
            RunStatus.RUNNING,
            RunStatus.FAILED,
            RunStatus.CANCELLED,
        ],
        RunStatus.RUNNING: [
            RunStatus.RUNNING,  # next iteration
            RunStatus.COMPLETED,
            RunStatus.FAILED,
            RunStatus.CANCELLED,
        ],
        RunStatus.COMPLETED: [],
        RunStatus.FAILED: [],
        RunStatus.CANCELLED: [],
    }

    def __init__(self, run_id: str, initial_state: RunStatus = RunStatus.PLANNING):
        self.run_id = run_id
        self.current_state = RunStatus(initial_state)
        self.transition_history: List[RunTransition] = []

    @property
    def is_terminal(self) -> bool:
        return self.current_state in TERMINAL_RUN_STATES

    def can_transition_to(self, target_state: RunStatus) -> bool:
        """Check if transition to target state is allowed."""
        return target_state in self.ALLOWED_TRANSITIONS.get(self.current_state, [])

    def transition_to(
        self,
        target_state: RunStatus,
        action: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> RunTransition:
        """
        Move the run to a new state.

        Args:
            target_state: State to transition to
            action: Description of what triggered the transition
            metadata: Extra context stored with the transition

        Returns:
            RunTransition: The recorded transition

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        target_state = RunStatus(target_state)
        if not self.can_transition_to(target_state):
            raise InvalidTransitionError(
                f"Invalid transition for run {self.run_id} from {self.current_state.value} "
                f"to {target_state.value}. Allowed: "
                f"{[s.value for s in self.ALLOWED_TRANSITIONS[self.current_state]]}"
            )

        transition = RunTransition(
            from_state=self.current_state,
            to_state=target_state,
            action=action or f"Transition to {target_state.value}",
            metadata=metadata or {},
        )
        self.current_state = target_state
        self.transition_history.append(transition)

        logger.debug(f"Run {self.run_id} transitioned to {target_state.value}: {action}")
        return transition

    def get_transition_history(self) -> List[RunTransition]:
        return list(self.transition_history)

    def seconds_running(self, now: Optional[datetime] = None) -> float:
        """
        Wall time spent in ``running``.

        Re-entering ``running`` for the next iteration does not reset the
        clock; the span lasts until the run leaves ``running`` for a
        terminal state, or until ``now`` while it is still running.
        """
        entered = next(
            (t.timestamp for t in self.transition_history if t.to_state == RunStatus.RUNNING),
            None,
        )
        if entered is None:
            return 0.0
        left = next(
            (t.timestamp for t in self.transition_history
             if t.from_state == RunStatus.RUNNING and t.to_state != RunStatus.RUNNING),
            None,
        )
        return ((left or now or _utcnow()) - entered).total_seconds()

    def recent_transitions(self, limit: int = 5) -> List[Dict[str, str]]:
        return [
            {"to": t.to_state.value, "action": t.action, "at": t.timestamp.isoformat()}
            for t in self.transition_history[-limit:]
        ]
