"""
Goal Orchestrator — top-level goal state machine

Flow per goal:
1. submit() records the goal as Pending and queues it
2. The admission loop hands out resource tokens FIFO
3. Planning: planner asks the router for a plan
4. Executing: executor runs the plan level by level
5. A step that exhausts its retries sends the goal back to Planning,
   up to MAX_REPLANS times
6. Terminal: release the token, seal working memory, learn, persist
"""
from typing import Any, Callable, Deque, Dict, List, Optional
from collections import deque
from copy import deepcopy
from dataclasses import dataclass, field
import asyncio
import logging
import time

from goalengine.agent.executor import StepExecutor
from goalengine.agent.learning import GoalTrace, LearningSystem
from goalengine.agent.memory import KnowledgeBase, WorkingMemory
from goalengine.agent.models import Goal, GoalPriority, GoalStatus, Step, StepStatus, new_id
from goalengine.agent.planner import Planner, build_steps
from goalengine.agent.resources import AdmissionToken, ResourceManager
from goalengine.cancellation import CancellationToken
from goalengine.config import Settings
from goalengine.db import queries
from goalengine.errors import (
    EngineError,
    NotFound,
    OperationCancelled,
    OperationTimeout,
    PlanningFailure,
    ResourceExhausted,
    ValidationError,
)

logger = logging.getLogger(__name__)

GoalListener = Callable[[Dict[str, Any]], None]


@dataclass
class _GoalRecord:
    goal: Goal
    token: CancellationToken
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    admission: Optional[AdmissionToken] = None
    route_decisions: List[Dict[str, Any]] = field(default_factory=list)


class GoalOrchestrator:
    """
    Owns every Goal and drives it to a terminal state.

    Usage:
        orchestrator = GoalOrchestrator(settings, planner, executor, resources, memory, knowledge)
        await orchestrator.start()
        goal_id = await orchestrator.submit("Create a file notes.txt containing hello")
        goal = await orchestrator.wait(goal_id, timeout=30)
    """

    def __init__(
        self,
        settings: Settings,
        planner: Planner,
        executor: StepExecutor,
        resources: ResourceManager,
        working_memory: WorkingMemory,
        knowledge_base: KnowledgeBase,
        learning: Optional[LearningSystem] = None,
        store=None,
    ):
        self.settings = settings
        self.planner = planner
        self.executor = executor
        self.resources = resources
        self.working_memory = working_memory
        self.knowledge_base = knowledge_base
        self.learning = learning
        self.store = store

        self._goals: Dict[str, _GoalRecord] = {}
        self._steps: Dict[str, Step] = {}
        self._queue: Deque[_GoalRecord] = deque()
        self._listeners: List[GoalListener] = []
        self._wake = asyncio.Event()
        self._admission_task: Optional[asyncio.Task] = None

        if self.executor.emit is None:
            self.executor.emit = self._emit
        self.resources.on_release = self._wake.set

    # ─── Lifecycle ──────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._admission_task is None or self._admission_task.done():
            await self.resources.start()
            self._admission_task = asyncio.create_task(self._admission_loop())
            logger.info("Goal orchestrator started")

    async def shutdown(self) -> None:
        if self._admission_task is not None:
            self._admission_task.cancel()
            await asyncio.gather(self._admission_task, return_exceptions=True)
            self._admission_task = None

        running = [r for r in self._goals.values() if not r.goal.terminal]
        for record in running:
            record.token.cancel("engine shutting down")
            if record.task is None:
                self._dequeue(record)
                await self._terminate(record, GoalStatus.CANCELLED)
        tasks = [r.task for r in running if r.task is not None]
        if tasks:
            await asyncio.wait(tasks, timeout=self.settings.STOP_GRACE_SECONDS)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.resources.stop()
        logger.info("Goal orchestrator stopped")

    # ─── Goal API ───────────────────────────────────────────────────────────

    async def submit(self, description: str, priority: str = GoalPriority.MEDIUM.value) -> str:
        if not description or not description.strip():
            raise ValidationError("Goal description must not be empty")
        try:
            goal_priority = GoalPriority(priority)
        except ValueError:
            raise ValidationError(
                f"Unknown priority '{priority}'",
                allowed=[p.value for p in GoalPriority],
            )

        goal = Goal(id=new_id("goal"), description=description.strip(), priority=goal_priority)
        record = _GoalRecord(goal=goal, token=CancellationToken())
        self._goals[goal.id] = record
        self._queue.append(record)
        self._emit("goal:submitted", {"goal_id": goal.id, "description": goal.description})
        self._wake.set()
        logger.info(f"Goal submitted: {goal.id} [{goal.priority.value}] {goal.description[:80]}")
        return goal.id

    def status(self, goal_id: str) -> Goal:
        return deepcopy(self._get(goal_id).goal)

    def list(self) -> List[Goal]:
        return [deepcopy(r.goal) for r in self._goals.values()]

    def steps(self, goal_id: str) -> List[Step]:
        goal = self._get(goal_id).goal
        return [deepcopy(self._steps[step_id]) for step_id in goal.plan]

    async def stop(self, goal_id: str) -> Goal:
        """Idempotent; terminal goals are left as they are"""
        record = self._get(goal_id)
        goal = record.goal
        if goal.terminal:
            return deepcopy(goal)

        if record.task is None:
            self._dequeue(record)
            record.token.cancel("stop requested")
            await self._terminate(record, GoalStatus.CANCELLED)
            return deepcopy(goal)

        logger.info(f"Stopping goal {goal_id} ({goal.status.value})")
        record.token.cancel("stop requested")
        await asyncio.wait({record.task}, timeout=self.settings.STOP_GRACE_SECONDS)
        if not record.task.done():
            logger.warning(f"Goal {goal_id} ignored cancellation for {self.settings.STOP_GRACE_SECONDS}s, forcing")
            record.task.cancel()
            await asyncio.wait({record.task})
        return deepcopy(goal)

    async def wait(self, goal_id: str, timeout: Optional[float] = None) -> Goal:
        record = self._get(goal_id)
        try:
            await asyncio.wait_for(record.done.wait(), timeout)
        except asyncio.TimeoutError:
            raise OperationTimeout(
                f"Goal {goal_id} not terminal after {timeout}s",
                goal_id=goal_id,
                status=record.goal.status.value,
            )
        return deepcopy(record.goal)

    def subscribe(self, listener: GoalListener) -> Callable[[], None]:
        """Register a goal event listener; returns the unsubscribe function"""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def cleanup_completed(self, older_than: float = 0.0) -> int:
        """Forget terminal goals (and their steps) that finished over ``older_than`` seconds ago"""
        cutoff = time.time() - older_than
        expired = [
            goal_id for goal_id, record in self._goals.items()
            if record.done.is_set()
            and record.goal.completed_at is not None
            and record.goal.completed_at <= cutoff
        ]
        for goal_id in expired:
            record = self._goals.pop(goal_id)
            for step_id in record.goal.plan:
                self._steps.pop(step_id, None)
            self.working_memory.forget(goal_id)
        if expired:
            logger.info(f"Cleaned up {len(expired)} finished goal(s)")
        return len(expired)

    # ─── Admission ──────────────────────────────────────────────────────────

    async def _admission_loop(self) -> None:
        while True:
            self._wake.clear()
            self._admit_pending()
            self._housekeeping()
            waiter = asyncio.ensure_future(self._wake.wait())
            try:
                await asyncio.wait({waiter}, timeout=self.settings.ADMISSION_POLL_INTERVAL_SECONDS)
            finally:
                waiter.cancel()

    def _housekeeping(self) -> None:
        self.working_memory.purge_expired()
        if self.settings.GOAL_RETENTION_SECONDS > 0:
            self.cleanup_completed(self.settings.GOAL_RETENTION_SECONDS)

    def _admit_pending(self) -> None:
        while self._queue:
            record = self._queue[0]
            if record.goal.terminal:
                self._queue.popleft()
                continue
            try:
                record.admission = self.resources.acquire(record.goal.id)
            except ResourceExhausted as e:
                logger.debug(f"Goal {record.goal.id} stays pending: {e.message}")
                return
            self._queue.popleft()
            record.task = asyncio.create_task(self._drive(record))
            self._emit("goal:admitted", {"goal_id": record.goal.id})

    def _dequeue(self, record: _GoalRecord) -> None:
        if record in self._queue:
            self._queue.remove(record)

    # ─── Goal driver ────────────────────────────────────────────────────────

    async def _drive(self, record: _GoalRecord) -> None:
        try:
            await self._run_goal(record)
        except OperationCancelled:
            await self._terminate(record, GoalStatus.CANCELLED)
        except asyncio.CancelledError:
            await self._terminate(record, GoalStatus.CANCELLED)
            raise
        except PlanningFailure as e:
            logger.warning(f"Goal {record.goal.id} failed to plan: {e.message}")
            record.route_decisions.extend(e.context.get("route_decisions") or [])
            await self._terminate(record, GoalStatus.FAILED, e.to_dict())
        except EngineError as e:
            logger.exception(f"Goal {record.goal.id} failed")
            await self._terminate(record, GoalStatus.FAILED, e.to_dict())
        except Exception as e:
            logger.exception(f"Goal {record.goal.id} crashed")
            await self._terminate(record, GoalStatus.FAILED, {
                "kind": "internal_error",
                "message": f"{type(e).__name__}: {str(e)}",
                "context": {},
            })

    async def _run_goal(self, record: _GoalRecord) -> None:
        goal = record.goal
        token = record.token
        failure_context: Optional[Dict[str, Any]] = None

        while True:
            token.raise_if_cancelled()
            goal.transition(GoalStatus.PLANNING)
            facts = self.knowledge_base.top_k(self.settings.PLANNER_KNOWLEDGE_TOP_K)
            goal.context_fact_ids = [f.id for f in facts]
            try:
                plan = await self.planner.create_plan(
                    goal,
                    self.working_memory.recent(goal.id, self.settings.PLANNER_MEMORY_WINDOW),
                    facts,
                    cancel_token=token,
                    failure_context=failure_context,
                )
            except PlanningFailure as e:
                if failure_context is not None:
                    # the step failure that forced the re-plan stays on the goal
                    failed_step = failure_context["failed_step"]
                    e.context.update(
                        step_id=failed_step["id"],
                        tool_name=failed_step["tool_name"],
                        attempt_count=failed_step["attempt_count"],
                        replan_count=goal.replan_count,
                        error=failure_context["error"],
                    )
                raise
            record.route_decisions.extend(plan.metadata.get("route_decisions", []))

            steps = build_steps(plan, goal.id, self.settings.STEP_MAX_ATTEMPTS)
            for step in steps:
                self._steps[step.id] = step
            goal.plan.extend(step.id for step in steps)
            self._emit("goal:plan_created", {
                "goal_id": goal.id,
                "revision": goal.replan_count,
                "plan": plan.to_dict(),
            })

            token.raise_if_cancelled()
            goal.transition(GoalStatus.EXECUTING)
            outcome = await self.executor.execute(goal.id, steps, token)

            if outcome.succeeded:
                goal.result = {
                    "output": steps[-1].output,
                    "steps": self._completed_outputs(goal),
                }
                await self._terminate(record, GoalStatus.COMPLETED)
                return

            failed = outcome.failed_step
            if goal.replan_count >= self.settings.MAX_REPLANS:
                await self._terminate(record, GoalStatus.FAILED, {
                    "kind": (outcome.error or {}).get("kind", "step_failed"),
                    "message": f"Step {failed.id} ({failed.tool_name}) failed after {failed.attempt_count} attempts",
                    "context": {
                        "step_id": failed.id,
                        "tool_name": failed.tool_name,
                        "attempt_count": failed.attempt_count,
                        "replan_count": goal.replan_count,
                        "error": outcome.error,
                    },
                })
                return

            goal.replan_count += 1
            failure_context = {
                "failed_step": failed.to_dict(),
                "error": outcome.error,
                "completed_outputs": self._completed_outputs(goal),
            }
            self._emit("goal:replanning", {
                "goal_id": goal.id,
                "replan_count": goal.replan_count,
                "failed_step": failed.id,
            })
            logger.info(f"Re-planning goal {goal.id} ({goal.replan_count}/{self.settings.MAX_REPLANS})")

    def _completed_outputs(self, goal: Goal) -> Dict[str, Any]:
        return {
            step_id: self._steps[step_id].output
            for step_id in goal.plan
            if self._steps[step_id].status is StepStatus.SUCCEEDED
        }

    async def _terminate(
        self,
        record: _GoalRecord,
        status: GoalStatus,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        goal = record.goal
        if goal.terminal:
            return
        goal.error = error
        goal.transition(status)

        self.working_memory.seal(goal.id)
        if record.admission is not None:
            record.admission.release()
        self._emit(f"goal:{status.value}", {"goal_id": goal.id, "result": goal.result, "error": goal.error})
        logger.info(f"Goal {goal.id} {status.value}")

        steps = [self._steps[step_id] for step_id in goal.plan]
        try:
            if self.learning is not None and status in (GoalStatus.COMPLETED, GoalStatus.FAILED):
                try:
                    await self.learning.learn(GoalTrace.capture(goal, steps, record.route_decisions))
                except EngineError as e:
                    logger.warning(f"Learning skipped for {goal.id}: {e.message}")

            if self.store is not None:
                try:
                    await queries.append_goal_snapshot(self.store, goal, steps)
                except Exception as e:
                    logger.warning(f"Failed to store goal snapshot for {goal.id}: {e}")
        finally:
            # waiters see the goal only once it is learned from and persisted
            record.done.set()

    # ─── Events ─────────────────────────────────────────────────────────────

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        event = {"type": event_type, "timestamp": time.time(), **payload}
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Goal listener failed on {event_type}")

    def _get(self, goal_id: str) -> _GoalRecord:
        record = self._goals.get(goal_id)
        if record is None:
            raise NotFound(f"Goal '{goal_id}' not found", goal_id=goal_id)
        return record
