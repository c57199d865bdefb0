from __future__ import annotations

import pytest

from goalengine.agent.models import Goal, GoalPriority, GoalStatus, Step, StepStatus
from goalengine.errors import InvalidTransition


def test_goal_follows_happy_path_and_records_history() -> None:
    goal = Goal(id="goal_1", description="write notes")

    goal.transition(GoalStatus.PLANNING)
    goal.transition(GoalStatus.EXECUTING)
    goal.transition(GoalStatus.COMPLETED)

    assert goal.terminal is True
    assert goal.completed_at is not None
    assert [status for status, _ in goal.history] == ["pending", "planning", "executing", "completed"]


def test_goal_can_replan_from_executing() -> None:
    goal = Goal(id="goal_1", description="x")
    goal.transition(GoalStatus.PLANNING)
    goal.transition(GoalStatus.EXECUTING)

    goal.transition(GoalStatus.PLANNING)

    assert goal.status is GoalStatus.PLANNING


@pytest.mark.parametrize("start", [GoalStatus.PENDING, GoalStatus.PLANNING, GoalStatus.EXECUTING])
def test_any_live_goal_can_be_cancelled(start: GoalStatus) -> None:
    goal = Goal(id="goal_1", description="x", status=start)

    goal.transition(GoalStatus.CANCELLED)

    assert goal.status is GoalStatus.CANCELLED


@pytest.mark.parametrize("terminal", [GoalStatus.COMPLETED, GoalStatus.FAILED, GoalStatus.CANCELLED])
def test_terminal_goal_never_changes(terminal: GoalStatus) -> None:
    goal = Goal(id="goal_1", description="x", status=terminal)

    with pytest.raises(InvalidTransition) as exc_info:
        goal.transition(GoalStatus.PLANNING)

    assert goal.status is terminal
    assert exc_info.value.context["from_status"] == terminal.value


def test_goal_cannot_skip_planning() -> None:
    goal = Goal(id="goal_1", description="x")

    with pytest.raises(InvalidTransition):
        goal.transition(GoalStatus.EXECUTING)


def test_priority_importance_is_ordered() -> None:
    values = [p.importance for p in (GoalPriority.LOW, GoalPriority.MEDIUM, GoalPriority.HIGH, GoalPriority.CRITICAL)]
    assert values == sorted(values)


def test_step_retry_cycle_counts_attempts() -> None:
    step = Step(id="g.step_0", goal_id="g", tool_name="echo", max_attempts=2)

    step.transition(StepStatus.RUNNING)
    step.transition(StepStatus.FAILED)
    step.transition(StepStatus.PENDING)
    step.transition(StepStatus.RUNNING)
    step.transition(StepStatus.SUCCEEDED)

    assert step.attempt_count == 2
    assert step.status is StepStatus.SUCCEEDED


def test_step_cannot_retry_past_max_attempts() -> None:
    step = Step(id="g.step_0", goal_id="g", tool_name="echo", max_attempts=1)
    step.transition(StepStatus.RUNNING)
    step.transition(StepStatus.FAILED)

    assert step.exhausted is True
    with pytest.raises(InvalidTransition):
        step.transition(StepStatus.PENDING)
    assert step.attempt_count == 1


def test_succeeded_step_is_final() -> None:
    step = Step(id="g.step_0", goal_id="g", tool_name="echo")
    step.transition(StepStatus.RUNNING)
    step.transition(StepStatus.SUCCEEDED)

    with pytest.raises(InvalidTransition):
        step.transition(StepStatus.RUNNING)


def test_goal_to_dict_is_serialisable_snapshot() -> None:
    goal = Goal(id="goal_1", description="x", priority=GoalPriority.HIGH)
    data = goal.to_dict()
    data["plan"].append("mutated")

    assert goal.plan == []
    assert data["priority"] == "high"
    assert data["history"][0]["status"] == "pending"
