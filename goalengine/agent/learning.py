"""
Learning — post-goal analysis

After a goal completes or fails its step trace is summarised into a
KnowledgeFact, and two pure functions derive new router health weights and
new relevance feedback for the facts that were used as planning context.
Both are computed from one prior snapshot; weight changes are installed
as deltas on top of whatever the router recorded meanwhile.
Goal and step history are only read, never changed.
"""
from typing import Any, Dict, List, Optional
from collections import Counter
from copy import deepcopy
from dataclasses import dataclass, field
import logging

from goalengine.agent.memory import KnowledgeBase, KnowledgeFact
from goalengine.agent.models import Goal, GoalPriority, GoalStatus, Step
from goalengine.config import Settings

logger = logging.getLogger(__name__)

GOAL_SUCCESS_BONUS = 0.02
GOAL_FAILURE_PENALTY = 0.05
TRANSIENT_FAILURE_PENALTY = 0.05
FEEDBACK_SUCCESS_FACTOR = 1.1
FEEDBACK_FAILURE_FACTOR = 0.9
FEEDBACK_MIN = 0.1
FEEDBACK_MAX = 5.0


@dataclass(frozen=True)
class GoalTrace:
    """Read-only copy of everything one goal did"""
    goal: Dict[str, Any]
    steps: List[Dict[str, Any]] = field(default_factory=list)
    provider_attempts: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def capture(cls, goal: Goal, steps: List[Step], route_decisions: List[Dict[str, Any]]) -> "GoalTrace":
        attempts = []
        for decision in route_decisions:
            attempts.extend(decision.get("attempts", []))
        return cls(
            goal=deepcopy(goal.to_dict()),
            steps=[deepcopy(s.to_dict()) for s in steps],
            provider_attempts=deepcopy(attempts),
        )

    @property
    def succeeded(self) -> bool:
        return self.goal.get("status") == GoalStatus.COMPLETED.value


def summarize_trace(trace: GoalTrace, failure_threshold: int = 2) -> Dict[str, Any]:
    """What worked, what failed, which tools and providers were involved"""
    worked = [s["tool_name"] for s in trace.steps if s["status"] == "succeeded"]
    failed = [s for s in trace.steps if s["status"] == "failed"]
    attempts_by_tool = Counter()
    for s in trace.steps:
        attempts_by_tool[s["tool_name"]] += s.get("attempt_count", 0)
    unreliable = sorted(
        tool for tool in {s["tool_name"] for s in failed}
        if attempts_by_tool[tool] >= failure_threshold
    )
    provider_outcomes: Dict[str, Dict[str, int]] = {}
    for attempt in trace.provider_attempts:
        counts = provider_outcomes.setdefault(attempt["provider_id"], {})
        counts[attempt["outcome"]] = counts.get(attempt["outcome"], 0) + 1

    goal = trace.goal
    status = goal.get("status")
    parts = [f"Goal \"{goal.get('description', '')}\" {status}"]
    if goal.get("replan_count"):
        parts.append(f"after {goal['replan_count']} re-plan(s)")
    text = " ".join(parts) + "."
    if worked:
        text += f" Worked: {', '.join(sorted(set(worked)))}."
    if failed:
        errors = "; ".join(
            f"{s['tool_name']}: {(s.get('error') or {}).get('message', 'failed')}" for s in failed
        )
        text += f" Failed: {errors}."
    if provider_outcomes:
        providers = ", ".join(
            f"{pid} ({', '.join(f'{k}={v}' for k, v in sorted(c.items()))})"
            for pid, c in sorted(provider_outcomes.items())
        )
        text += f" Providers: {providers}."

    return {
        "content": text,
        "category": "success_pattern" if trace.succeeded else "failure_pattern",
        "metadata": {
            "goal_status": status,
            "tools_succeeded": sorted(set(worked)),
            "tools_failed": sorted({s["tool_name"] for s in failed}),
            "unreliable_tools": unreliable,
            "providers": provider_outcomes,
            "replan_count": goal.get("replan_count", 0),
        },
    }


def adjust_provider_weights(
    trace: GoalTrace,
    prior: Dict[str, float],
    failure_threshold: int = 2,
) -> Dict[str, float]:
    """
    Nudge the health score of every provider that served the goal by its
    outcome, and push down providers whose transient failures within the
    goal reached ``failure_threshold``. Providers the goal never touched
    keep their prior weight.
    """
    weights = dict(prior)
    served = {a["provider_id"] for a in trace.provider_attempts if a.get("outcome") == "success"}
    transient_failures = Counter(
        a["provider_id"] for a in trace.provider_attempts
        if a.get("outcome") == "failure" and a.get("severity") == "transient"
    )
    for provider_id in weights:
        delta = 0.0
        if provider_id in served:
            delta += GOAL_SUCCESS_BONUS if trace.succeeded else -GOAL_FAILURE_PENALTY
        if transient_failures[provider_id] >= failure_threshold:
            delta -= TRANSIENT_FAILURE_PENALTY
        if delta:
            weights[provider_id] = max(0.0, min(1.0, weights[provider_id] + delta))
    return weights


def adjust_fact_feedback(trace: GoalTrace, prior: Dict[str, float]) -> Dict[str, float]:
    """Facts that were planning context for a completed goal rank higher next time"""
    feedback = dict(prior)
    factor = FEEDBACK_SUCCESS_FACTOR if trace.succeeded else FEEDBACK_FAILURE_FACTOR
    for fact_id in trace.goal.get("context_fact_ids", []):
        current = feedback.get(fact_id, 1.0)
        feedback[fact_id] = max(FEEDBACK_MIN, min(FEEDBACK_MAX, current * factor))
    return feedback


class LearningSystem:
    def __init__(self, knowledge_base: KnowledgeBase, provider_registry, settings: Settings):
        self.knowledge_base = knowledge_base
        self.provider_registry = provider_registry
        self.settings = settings

    async def learn(self, trace: GoalTrace) -> Optional[KnowledgeFact]:
        if not self.settings.LEARNING_ENABLED:
            return None

        summary = summarize_trace(trace, self.settings.LEARNING_FAILURE_THRESHOLD)
        prior_weights = self.provider_registry.health_weights()
        new_weights = adjust_provider_weights(trace, prior_weights, self.settings.LEARNING_FAILURE_THRESHOLD)
        new_feedback = adjust_fact_feedback(trace, self.knowledge_base.feedback())

        self.knowledge_base.apply_feedback(new_feedback)
        await self.provider_registry.adjust_weights({
            pid: w - prior_weights[pid]
            for pid, w in new_weights.items()
            if pid in prior_weights and w != prior_weights[pid]
        })
        fact = await self.knowledge_base.append(
            summary["content"],
            source_goal_id=trace.goal["id"],
            category=summary["category"],
            importance=_importance(trace),
            metadata=summary["metadata"],
        )
        logger.info(f"Learned from {trace.goal['id']}: {summary['category']} -> {fact.id}")
        return fact


def _importance(trace: GoalTrace) -> float:
    return GoalPriority(trace.goal.get("priority", GoalPriority.MEDIUM.value)).importance
