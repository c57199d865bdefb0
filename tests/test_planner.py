from __future__ import annotations

import pytest

from goalengine.agent.models import Goal
from goalengine.agent.planner import ExecutionPlan, Planner, PlanStep, build_steps, validate_plan
from goalengine.agent.tool_registry import ToolRegistry
from goalengine.errors import PlanningFailure, ValidationError
from goalengine.router.registry import ProviderRegistry
from goalengine.router.router import LLMRouter
from tests.fakes import EchoTool, FakeProvider, make_settings, permanent, plan_json


def make_planner(*replies, failures=None, **overrides):
    settings = make_settings(**overrides)
    provider = FakeProvider("planner-llm", replies=list(replies), failures=failures)
    registry = ProviderRegistry(settings)
    registry.register(provider)
    tools = ToolRegistry()
    tools.register(EchoTool())
    return Planner(LLMRouter(registry, settings), tools, settings), provider


ECHO_TWICE = plan_json(
    {"tool_name": "echo", "args": {"message": "hi"}},
    {"tool_name": "echo", "args": {"message": "again: {step_0_output}"}, "depends_on": [0]},
)


@pytest.mark.asyncio
async def test_create_plan_returns_validated_levels_and_metadata() -> None:
    planner, provider = make_planner(ECHO_TWICE)
    goal = Goal(id="goal_1", description="say hi twice")

    plan = await planner.create_plan(goal)

    assert [s.tool_name for s in plan.steps] == ["echo", "echo"]
    assert [s.level for s in plan.steps] == [0, 1]
    assert plan.metadata["provider"] == "planner-llm"
    assert plan.metadata["repair_attempts"] == 0
    assert plan.metadata["revision"] == 0
    assert len(plan.metadata["route_decisions"]) == 1

    request = provider.calls[0]
    assert request.model_class == "planning"
    assert "planning" in request.required_capabilities
    assert "echo" in request.last_user_message()
    assert "say hi twice" in request.last_user_message()


@pytest.mark.asyncio
async def test_invalid_plan_gets_one_repair_prompt() -> None:
    bad = plan_json({"tool_name": "teleport", "args": {}})
    planner, provider = make_planner(bad, ECHO_TWICE)

    plan = await planner.create_plan(Goal(id="goal_1", description="x"))

    assert plan.metadata["repair_attempts"] == 1
    assert len(provider.calls) == 2
    repair = provider.calls[1].last_user_message()
    assert "VALIDATION ERROR" in repair
    assert "teleport" in repair


@pytest.mark.asyncio
async def test_planning_fails_after_repair_is_also_invalid() -> None:
    planner, provider = make_planner("I would rather not plan today")

    with pytest.raises(PlanningFailure) as exc_info:
        await planner.create_plan(Goal(id="goal_1", description="x"))

    assert len(provider.calls) == 2
    assert exc_info.value.context["validation_error"]["kind"] == "validation_error"
    assert len(exc_info.value.context["route_decisions"]) == 2


@pytest.mark.asyncio
async def test_repair_attempts_are_configurable() -> None:
    planner, provider = make_planner("nope", PLANNER_REPAIR_ATTEMPTS=0)

    with pytest.raises(PlanningFailure):
        await planner.create_plan(Goal(id="goal_1", description="x"))

    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_router_failure_becomes_planning_failure() -> None:
    planner, _ = make_planner(ECHO_TWICE, failures=[permanent("planner-llm")])

    with pytest.raises(PlanningFailure) as exc_info:
        await planner.create_plan(Goal(id="goal_1", description="x"))

    assert exc_info.value.context["provider_error"]["severity"] == "permanent"


@pytest.mark.asyncio
async def test_plan_json_inside_markdown_is_accepted() -> None:
    planner, _ = make_planner("Here you go:\n```json\n" + ECHO_TWICE + "\n```")

    plan = await planner.create_plan(Goal(id="goal_1", description="x"))

    assert len(plan.steps) == 2


@pytest.mark.asyncio
async def test_replan_prompt_carries_failure_context() -> None:
    planner, provider = make_planner(ECHO_TWICE)
    goal = Goal(id="goal_1", description="x", replan_count=1)
    failure_context = {
        "completed_outputs": {"step_0": "first output"},
        "failed_step": {"tool_name": "flaky", "description": "unreliable"},
        "error": {"kind": "tool_invocation_error", "message": "disk full"},
    }

    plan = await planner.create_plan(goal, failure_context=failure_context)

    prompt = provider.calls[0].last_user_message()
    assert "RE-PLANNING" in prompt
    assert "first output" in prompt
    assert "disk full" in prompt
    assert plan.metadata["revision"] == 1


def plan_of(*steps: PlanStep) -> ExecutionPlan:
    return ExecutionPlan(goal="g", complexity="simple", steps=list(steps))


def test_validate_plan_assigns_parallel_levels() -> None:
    plan = plan_of(
        PlanStep(0, "echo", "a"),
        PlanStep(1, "echo", "b"),
        PlanStep(2, "echo", "c", depends_on=[0, 1]),
    )

    validate_plan(plan, ["echo"], max_steps=10)

    assert [s.level for s in plan.steps] == [0, 0, 1]


def test_validate_plan_rejects_forward_dependency() -> None:
    plan = plan_of(PlanStep(0, "echo", "a", depends_on=[1]), PlanStep(1, "echo", "b"))

    with pytest.raises(ValidationError) as exc_info:
        validate_plan(plan, ["echo"], max_steps=10)

    assert exc_info.value.context["depends_on"] == 1


@pytest.mark.parametrize(
    "steps, message",
    [
        ([], "no steps"),
        ([PlanStep(0, "echo", "a"), PlanStep(0, "echo", "b")], "Duplicate"),
        ([PlanStep(0, "teleport", "a")], "unknown tool"),
        ([PlanStep(i, "echo", "a") for i in range(4)], "limit is 3"),
    ],
)
def test_validate_plan_rejects_malformed_plans(steps, message) -> None:
    with pytest.raises(ValidationError, match=message):
        validate_plan(plan_of(*steps), ["echo"], max_steps=3)


def test_from_dict_rejects_non_object_steps() -> None:
    with pytest.raises(ValidationError):
        ExecutionPlan.from_dict({"steps": ["echo"]})
    with pytest.raises(ValidationError):
        ExecutionPlan.from_dict({"steps": [{"tool_name": "echo", "args": "not a dict"}]})


def test_build_steps_scopes_ids_to_goal_and_revision() -> None:
    plan = plan_of(PlanStep(0, "echo", "a"), PlanStep(1, "echo", "b", depends_on=[0]))
    validate_plan(plan, ["echo"], max_steps=10)

    first = build_steps(plan, "goal_1", max_attempts=3)
    plan.metadata["revision"] = 2
    second = build_steps(plan, "goal_1", max_attempts=3)

    assert [s.id for s in first] == ["goal_1.step_0", "goal_1.step_1"]
    assert first[1].depends_on == ["goal_1.step_0"]
    assert [s.id for s in second] == ["goal_1.step_0.r2", "goal_1.step_1.r2"]
    assert [s.plan_ref for s in second] == ["step_0", "step_1"]
    assert all(s.max_attempts == 3 for s in second)
