from __future__ import annotations

import asyncio

import pytest

from goalengine.agent.executor import StepExecutor
from goalengine.agent.memory import WorkingMemory
from goalengine.agent.models import Step, StepStatus
from goalengine.agent.tool_registry import ToolRegistry
from goalengine.cancellation import CancellationToken
from goalengine.errors import OperationCancelled
from tests.fakes import BrokenTool, EchoTool, FlakyTool, SlowTool, make_settings


def make_executor(*tools, **overrides):
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    memory = WorkingMemory()
    events = []
    executor = StepExecutor(
        registry,
        memory,
        make_settings(**overrides),
        emit=lambda event_type, payload: events.append((event_type, payload)),
    )
    return executor, memory, events


def step(n: int, tool_name: str, level: int = 0, max_attempts: int = 3, **arguments) -> Step:
    return Step(
        id=f"g.step_{n}",
        goal_id="g",
        tool_name=tool_name,
        arguments=arguments,
        level=level,
        plan_ref=f"step_{n}",
        max_attempts=max_attempts,
    )


@pytest.mark.asyncio
async def test_steps_run_in_order_and_outputs_flow_through_placeholders() -> None:
    echo = EchoTool()
    executor, memory, _ = make_executor(echo)
    steps = [
        step(0, "echo", message="draft"),
        step(1, "echo", level=1, message="{step_0_output}"),
        step(2, "echo", level=2, message="final: {step_1_output}"),
    ]

    outcome = await executor.execute("g", steps, CancellationToken())

    assert outcome.succeeded is True
    assert outcome.outputs == {"step_0": "draft", "step_1": "draft", "step_2": "final: draft"}
    assert [c["message"] for c in echo.calls] == ["draft", "draft", "final: draft"]
    assert memory.get("g", "g.step_2")["status"] == "succeeded"
    assert memory.get("g", "g.step_2")["output"] == "final: draft"


@pytest.mark.asyncio
async def test_non_string_output_is_passed_raw_or_rendered_as_json() -> None:
    echo = EchoTool()
    executor, memory, _ = make_executor(echo)
    first = step(0, "echo", message={"k": 1})
    first.status = StepStatus.SUCCEEDED
    first.output = {"k": 1}
    memory.put("g", first.id, {"status": "succeeded", "output": {"k": 1}})
    steps = [first, step(1, "echo", level=1, message="{step_0_output}"), step(2, "echo", level=1, message="got {step_0_output}")]

    outcome = await executor.execute("g", steps, CancellationToken())

    assert outcome.succeeded is True
    assert echo.calls[0]["message"] == {"k": 1}
    assert echo.calls[1]["message"] == 'got {"k": 1}'


@pytest.mark.asyncio
async def test_failed_attempts_are_retried_until_success() -> None:
    flaky = FlakyTool(failures=2)
    executor, memory, events = make_executor(flaky)
    steps = [step(0, "flaky", max_attempts=3)]

    outcome = await executor.execute("g", steps, CancellationToken())

    assert outcome.succeeded is True
    assert flaky.calls == 3
    assert steps[0].attempt_count == 3
    assert memory.get("g", "g.step_0")["attempt"] == 3
    started = [e for e, _ in events if e == "goal:step_started"]
    assert len(started) == 3


@pytest.mark.asyncio
async def test_exhausted_step_asks_for_replan_and_skips_later_levels() -> None:
    echo = EchoTool()
    executor, memory, _ = make_executor(FlakyTool(failures=5), echo)
    steps = [
        step(0, "echo", message="kept"),
        step(1, "flaky", level=1, max_attempts=2),
        step(2, "echo", level=2, message="never"),
    ]

    outcome = await executor.execute("g", steps, CancellationToken())

    assert outcome.needs_replan is True
    assert outcome.failed_step is steps[1]
    assert outcome.outputs == {"step_0": "kept"}
    assert outcome.error["kind"] == "tool_invocation_error"
    assert outcome.error["context"]["attempt"] == 2
    assert steps[1].exhausted is True
    assert steps[2].status is StepStatus.PENDING
    assert len(echo.calls) == 1


@pytest.mark.asyncio
async def test_raising_tool_is_reported_as_failure() -> None:
    broken = BrokenTool()
    executor, _, _ = make_executor(broken)
    steps = [step(0, "broken", max_attempts=2)]

    outcome = await executor.execute("g", steps, CancellationToken())

    assert outcome.succeeded is False
    assert broken.calls == 2
    assert "RuntimeError: boom" in outcome.error["message"]


@pytest.mark.asyncio
async def test_validation_errors_are_not_retried() -> None:
    echo = EchoTool()
    executor, _, _ = make_executor(echo)
    steps = [step(0, "echo", max_attempts=3)]  # missing required "message"

    outcome = await executor.execute("g", steps, CancellationToken())

    assert outcome.succeeded is False
    assert outcome.error["kind"] == "validation_error"
    assert steps[0].attempt_count == 1
    assert echo.calls == []


@pytest.mark.asyncio
async def test_unknown_tool_is_a_validation_error() -> None:
    executor, _, _ = make_executor(EchoTool())

    outcome = await executor.execute("g", [step(0, "teleport")], CancellationToken())

    assert outcome.error["kind"] == "validation_error"


@pytest.mark.asyncio
async def test_unresolvable_placeholder_fails_the_step() -> None:
    executor, _, _ = make_executor(EchoTool())

    outcome = await executor.execute("g", [step(0, "echo", message="{step_7_output}")], CancellationToken())

    assert outcome.error["kind"] == "validation_error"
    assert outcome.error["context"]["placeholder"] == "step_7"


@pytest.mark.asyncio
async def test_slow_tool_times_out_and_counts_as_attempt() -> None:
    slow = SlowTool(delay=10)
    executor, _, _ = make_executor(slow, TOOL_TIMEOUT_SECONDS=0.05)
    steps = [step(0, "slow", max_attempts=2)]

    outcome = await executor.execute("g", steps, CancellationToken())

    assert outcome.succeeded is False
    assert outcome.error["kind"] == "timeout"
    assert steps[0].attempt_count == 2
    assert slow.cancelled is True


@pytest.mark.asyncio
async def test_cancellation_aborts_running_tool() -> None:
    slow = SlowTool(delay=10)
    executor, memory, _ = make_executor(slow)
    token = CancellationToken()
    steps = [step(0, "slow")]

    run = asyncio.ensure_future(executor.execute("g", steps, token))
    await slow.started.wait()
    token.cancel("stop requested")

    with pytest.raises(OperationCancelled):
        await run
    assert slow.cancelled is True
    assert steps[0].status is StepStatus.FAILED
    assert memory.get("g", "g.step_0")["error"]["kind"] == "cancelled"


@pytest.mark.asyncio
async def test_independent_steps_share_a_level_under_parallel_limit() -> None:
    echo = EchoTool()
    executor, _, _ = make_executor(echo, MAX_PARALLEL_STEPS=2)
    steps = [step(0, "echo", message="a"), step(1, "echo", message="b"), step(2, "echo", level=1, message="{step_0_output}{step_1_output}")]

    outcome = await executor.execute("g", steps, CancellationToken())

    assert outcome.outputs["step_2"] == "ab"


def test_backoff_is_exponential_and_capped() -> None:
    executor, _, _ = make_executor(
        RETRY_BACKOFF_BASE_SECONDS=0.5,
        RETRY_BACKOFF_MULTIPLIER=2.0,
        RETRY_BACKOFF_MAX_SECONDS=3.0,
    )

    assert [executor.backoff_delay(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3.0]
