"""
Goal and Step state machines

Goal:  Pending → Planning → Executing → {Completed, Failed, Cancelled}
       with the re-plan edge Executing → Planning. Cancelled is reachable
       from every non-terminal state. Terminal states never change.
Step:  Pending → Running → {Succeeded, Failed}, Failed → Pending for a retry
       while attempts remain.
"""
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum
import time
import uuid

from goalengine.errors import InvalidTransition


class GoalStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_GOAL_STATES


class GoalPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def importance(self) -> float:
        return {"low": 0.25, "medium": 0.5, "high": 0.75, "critical": 1.0}[self.value]


TERMINAL_GOAL_STATES = frozenset({GoalStatus.COMPLETED, GoalStatus.FAILED, GoalStatus.CANCELLED})

GOAL_TRANSITIONS = {
    GoalStatus.PENDING: {GoalStatus.PLANNING, GoalStatus.CANCELLED},
    GoalStatus.PLANNING: {GoalStatus.EXECUTING, GoalStatus.FAILED, GoalStatus.CANCELLED},
    GoalStatus.EXECUTING: {GoalStatus.PLANNING, GoalStatus.COMPLETED, GoalStatus.FAILED, GoalStatus.CANCELLED},
    GoalStatus.COMPLETED: set(),
    GoalStatus.FAILED: set(),
    GoalStatus.CANCELLED: set(),
}


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


STEP_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.RUNNING},
    StepStatus.RUNNING: {StepStatus.SUCCEEDED, StepStatus.FAILED},
    StepStatus.FAILED: {StepStatus.PENDING},
    StepStatus.SUCCEEDED: set(),
}


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass
class Goal:
    """A submitted objective; owned by the orchestrator"""
    id: str
    description: str
    priority: GoalPriority = GoalPriority.MEDIUM
    status: GoalStatus = GoalStatus.PENDING
    plan: List[str] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    replan_count: int = 0
    context_fact_ids: List[str] = field(default_factory=list)
    history: List[Tuple[str, float]] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append((self.status.value, self.created_at))

    def transition(self, new_status: GoalStatus) -> None:
        if new_status not in GOAL_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Goal {self.id}: {self.status.value} → {new_status.value} is not allowed",
                goal_id=self.id,
                from_status=self.status.value,
                to_status=new_status.value,
            )
        self.status = new_status
        now = time.time()
        self.history.append((new_status.value, now))
        if new_status.terminal:
            self.completed_at = now

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "priority": self.priority.value,
            "status": self.status.value,
            "plan": list(self.plan),
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "result": self.result,
            "error": self.error,
            "replan_count": self.replan_count,
            "context_fact_ids": list(self.context_fact_ids),
            "history": [{"status": s, "at": at} for s, at in self.history],
        }


@dataclass
class Step:
    """One tool invocation within a goal's plan"""
    id: str
    goal_id: str
    tool_name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    depends_on: List[str] = field(default_factory=list)
    level: int = 0
    plan_ref: str = ""  # name used by {step_N_output} placeholders
    status: StepStatus = StepStatus.PENDING
    attempt_count: int = 0
    max_attempts: int = 3
    output: Any = None
    error: Optional[Dict[str, Any]] = None

    def transition(self, new_status: StepStatus) -> None:
        if new_status not in STEP_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Step {self.id}: {self.status.value} → {new_status.value} is not allowed",
                step_id=self.id,
                from_status=self.status.value,
                to_status=new_status.value,
            )
        if new_status is StepStatus.RUNNING:
            if self.attempt_count >= self.max_attempts:
                raise InvalidTransition(
                    f"Step {self.id} has no attempts left",
                    step_id=self.id,
                    attempt_count=self.attempt_count,
                    max_attempts=self.max_attempts,
                )
            self.attempt_count += 1
        if new_status is StepStatus.PENDING and self.attempt_count >= self.max_attempts:
            raise InvalidTransition(
                f"Step {self.id} cannot retry after {self.attempt_count} attempts",
                step_id=self.id,
                attempt_count=self.attempt_count,
                max_attempts=self.max_attempts,
            )
        self.status = new_status

    @property
    def exhausted(self) -> bool:
        return self.status is StepStatus.FAILED and self.attempt_count >= self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal_id": self.goal_id,
            "tool_name": self.tool_name,
            "arguments": dict(self.arguments),
            "description": self.description,
            "depends_on": list(self.depends_on),
            "level": self.level,
            "plan_ref": self.plan_ref,
            "status": self.status.value,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "output": self.output,
            "error": self.error,
        }
