"""
Unit tests for the run state machine.
"""

import pytest
from datetime import datetime

from rmri.core.errors import InvalidTransitionError
from rmri.core.workflow import (
    RunStatus,
    RunTransition,
    RunWorkflow,
    TERMINAL_RUN_STATES,
)


class TestRunTransition:
    """Test run transition model."""

    def test_create_transition(self):
        """Test creating a transition."""
        transition = RunTransition(
            from_state=RunStatus.PLANNING,
            to_state=RunStatus.RUNNING,
            action="start"
        )

        assert transition.from_state == RunStatus.PLANNING
        assert transition.to_state == RunStatus.RUNNING
        assert transition.action == "start"
        assert isinstance(transition.timestamp, datetime)

    def test_transition_with_metadata(self):
        """Test transition with metadata."""
        transition = RunTransition(
            from_state=RunStatus.RUNNING,
            to_state=RunStatus.RUNNING,
            action="iteration 2",
            metadata={"iteration": 2}
        )

        assert transition.metadata["iteration"] == 2


class TestRunWorkflow:
    """Test run workflow state machine."""

    def test_initial_state(self):
        workflow = RunWorkflow("run-1")

        assert workflow.current_state == RunStatus.PLANNING
        assert not workflow.is_terminal
        assert workflow.get_transition_history() == []

    def test_happy_path(self):
        """planning → running → running → completed."""
        workflow = RunWorkflow("run-1")

        workflow.transition_to(RunStatus.RUNNING, action="start")
        workflow.transition_to(RunStatus.RUNNING, action="iteration 2")
        workflow.transition_to(RunStatus.COMPLETED, action="finalize")

        assert workflow.current_state == RunStatus.COMPLETED
        assert workflow.is_terminal
        assert [t.action for t in workflow.get_transition_history()] == ["start", "iteration 2", "finalize"]

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_RUN_STATES, key=lambda s: s.value))
    def test_terminal_states_have_no_exits(self, terminal):
        workflow = RunWorkflow("run-1", initial_state=terminal)

        for target in RunStatus:
            assert not workflow.can_transition_to(target)
        with pytest.raises(InvalidTransitionError):
            workflow.transition_to(RunStatus.RUNNING)

    def test_planning_cannot_complete_directly(self):
        workflow = RunWorkflow("run-1")

        assert not workflow.can_transition_to(RunStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError, match="planning"):
            workflow.transition_to(RunStatus.COMPLETED)
        assert workflow.current_state == RunStatus.PLANNING

    def test_invalid_transition_is_value_error(self):
        """Callers catching ValueError also catch invalid transitions."""
        workflow = RunWorkflow("run-1", initial_state=RunStatus.FAILED)

        with pytest.raises(ValueError):
            workflow.transition_to(RunStatus.CANCELLED)

    def test_planning_can_be_cancelled(self):
        workflow = RunWorkflow("run-1")
        workflow.transition_to(RunStatus.CANCELLED, action="cancel")

        assert workflow.current_state == RunStatus.CANCELLED

    def test_seconds_running_spans_iterations(self):
        workflow = RunWorkflow("run-1")
        assert workflow.seconds_running() == 0.0

        start = workflow.transition_to(RunStatus.RUNNING, action="start")
        workflow.transition_to(RunStatus.RUNNING, action="iteration 2")
        done = workflow.transition_to(RunStatus.COMPLETED, action="finalize")

        expected = (done.timestamp - start.timestamp).total_seconds()
        assert workflow.seconds_running() == expected

    def test_recent_transitions(self):
        workflow = RunWorkflow("run-1")
        for i in range(7):
            workflow.transition_to(RunStatus.RUNNING, action=f"iteration {i + 1}")

        recent = workflow.recent_transitions()
        assert len(recent) == 5
        assert recent[-1]["action"] == "iteration 7"
        assert recent[0]["to"] == "running"
