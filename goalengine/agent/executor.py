"""
Executor — drives step state machines for one goal's plan

Runs the plan one dependency level at a time:
1. Resolve {step_N_output} placeholders from working memory
2. Invoke the tool through the registry (bounded by TOOL_TIMEOUT_SECONDS)
3. Write the step's state to working memory on every transition
4. On failure: back off and retry while attempts remain
5. A step that exhausts its attempts stops the run with a re-plan signal
"""
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
import asyncio
import json
import logging
import re

from goalengine.agent.memory import WorkingMemory
from goalengine.agent.models import Step, StepStatus
from goalengine.agent.tool_registry import ToolRegistry
from goalengine.cancellation import CancellationToken, run_cancellable
from goalengine.config import Settings
from goalengine.errors import (
    OperationCancelled,
    OperationTimeout,
    ToolInvocationError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{(step_\d+)_output\}")

# (event type, payload)
EventSink = Callable[[str, Dict[str, Any]], None]


@dataclass
class ExecutionOutcome:
    """What the orchestrator needs to decide between completion and re-planning"""
    succeeded: bool
    outputs: Dict[str, Any] = field(default_factory=dict)  # plan_ref -> output
    failed_step: Optional[Step] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def needs_replan(self) -> bool:
        return not self.succeeded


class StepExecutor:
    """
    Executes steps through the tool registry.

    Usage:
        executor = StepExecutor(registry, working_memory, settings)
        outcome = await executor.execute(goal_id, steps, cancel_token)
    """

    def __init__(
        self,
        tool_registry: ToolRegistry,
        working_memory: WorkingMemory,
        settings: Settings,
        emit: Optional[EventSink] = None,
    ):
        self.registry = tool_registry
        self.memory = working_memory
        self.settings = settings
        self.emit = emit

    async def execute(
        self,
        goal_id: str,
        steps: List[Step],
        cancel_token: CancellationToken,
    ) -> ExecutionOutcome:
        semaphore = asyncio.Semaphore(max(1, self.settings.MAX_PARALLEL_STEPS))

        for level in sorted({s.level for s in steps}):
            batch = [s for s in steps if s.level == level and s.status is not StepStatus.SUCCEEDED]
            results = await asyncio.gather(
                *(self._run_step(goal_id, step, steps, cancel_token, semaphore) for step in batch),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result

            failed = [s for s in batch if s.status is StepStatus.FAILED]
            if failed:
                step = failed[0]
                logger.warning(f"Step {step.id} ({step.tool_name}) gave up after {step.attempt_count} attempts")
                return ExecutionOutcome(
                    succeeded=False,
                    outputs=self._completed_outputs(steps),
                    failed_step=step,
                    error=step.error,
                )

        return ExecutionOutcome(succeeded=True, outputs=self._completed_outputs(steps))

    async def _run_step(
        self,
        goal_id: str,
        step: Step,
        plan: List[Step],
        token: CancellationToken,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            while True:
                token.raise_if_cancelled()
                step.transition(StepStatus.RUNNING)
                self._record(goal_id, step)
                self._emit("goal:step_started", goal_id, step)

                try:
                    arguments = self._resolve_args(goal_id, step.arguments, plan)
                    result = await run_cancellable(
                        self.registry.invoke(step.tool_name, arguments, cancel_token=token),
                        token,
                        self.settings.TOOL_TIMEOUT_SECONDS,
                        grace=self.settings.CANCEL_GRACE_SECONDS,
                    )
                except ValidationError as e:
                    # never retried
                    e.context.update(step_id=step.id, attempt=step.attempt_count)
                    self._fail(goal_id, step, e.to_dict())
                    return
                except OperationCancelled as e:
                    self._fail(goal_id, step, e.to_dict())
                    raise
                except asyncio.CancelledError:
                    self._fail(goal_id, step, OperationCancelled("Step task cancelled", step_id=step.id).to_dict())
                    raise
                except OperationTimeout as e:
                    e.context.update(step_id=step.id, tool_name=step.tool_name, attempt=step.attempt_count)
                    error = e.to_dict()
                else:
                    if result.success:
                        step.output = result.output
                        step.error = None
                        step.transition(StepStatus.SUCCEEDED)
                        self._record(goal_id, step)
                        self._emit("goal:step_completed", goal_id, step)
                        logger.info(f"Step {step.id} ({step.tool_name}) done in {result.latency_ms}ms")
                        return
                    error = ToolInvocationError(
                        result.error or "Tool reported failure",
                        step_id=step.id,
                        tool_name=step.tool_name,
                        attempt=step.attempt_count,
                    ).to_dict()

                self._fail(goal_id, step, error)
                if step.attempt_count >= step.max_attempts:
                    return

                delay = self.backoff_delay(step.attempt_count)
                logger.info(f"Retrying {step.id} in {delay:.2f}s (attempt {step.attempt_count}/{step.max_attempts})")
                await run_cancellable(asyncio.sleep(delay), token)
                step.transition(StepStatus.PENDING)
                self._record(goal_id, step)

    def backoff_delay(self, attempt: int) -> float:
        delay = self.settings.RETRY_BACKOFF_BASE_SECONDS * (
            self.settings.RETRY_BACKOFF_MULTIPLIER ** (attempt - 1)
        )
        return min(delay, self.settings.RETRY_BACKOFF_MAX_SECONDS)

    def _fail(self, goal_id: str, step: Step, error: Dict[str, Any]) -> None:
        step.error = error
        step.transition(StepStatus.FAILED)
        self._record(goal_id, step)
        self._emit("goal:step_completed", goal_id, step)

    def _record(self, goal_id: str, step: Step) -> None:
        self.memory.put(goal_id, step.id, {
            "status": step.status.value,
            "tool_name": step.tool_name,
            "output": step.output,
            "error": step.error,
            "attempt": step.attempt_count,
        })

    def _emit(self, event_type: str, goal_id: str, step: Step) -> None:
        if self.emit is not None:
            self.emit(event_type, {"goal_id": goal_id, "step": step.to_dict()})

    def _completed_outputs(self, steps: List[Step]) -> Dict[str, Any]:
        return {s.plan_ref or s.id: s.output for s in steps if s.status is StepStatus.SUCCEEDED}

    def _resolve_args(self, goal_id: str, args: Dict[str, Any], plan: List[Step]) -> Dict[str, Any]:
        """
        Replace template variables like {step_0_output} with actual step outputs.

        A value that is exactly one placeholder takes the raw output; inside
        longer strings the output is rendered as text.
        """
        by_ref = {s.plan_ref: s for s in plan if s.plan_ref}

        def lookup(ref: str) -> Any:
            source = by_ref.get(ref)
            entry = self.memory.get(goal_id, source.id) if source is not None else None
            if not entry or entry.get("status") != StepStatus.SUCCEEDED.value:
                raise ValidationError(f"Output of {ref} is not available", placeholder=ref)
            return entry["output"]

        def render(value: Any) -> str:
            return value if isinstance(value, str) else json.dumps(value, default=str)

        resolved = {}
        for key, value in args.items():
            if isinstance(value, str):
                whole = PLACEHOLDER.fullmatch(value)
                if whole:
                    resolved[key] = lookup(whole.group(1))
                else:
                    resolved[key] = PLACEHOLDER.sub(lambda m: render(lookup(m.group(1))), value)
            else:
                resolved[key] = value
        return resolved
