"""
Planner — LLM-powered execution plan generator

Takes a goal + working-memory and knowledge context + available tools →
structured JSON execution plan, requested through the LLM router. A plan that
fails validation gets one repair re-prompt carrying the validation error;
after that the planner gives up with PlanningFailure.
"""
from typing import Dict, Any, List, Optional, Sequence
from dataclasses import dataclass, field
import json
import logging

from goalengine.agent.memory import KnowledgeFact, WorkingMemoryEntry
from goalengine.agent.models import Goal, Step
from goalengine.cancellation import CancellationToken
from goalengine.config import Settings
from goalengine.errors import PlanningFailure, ProviderError, ValidationError
from goalengine.router.base import LLMRequest
from goalengine.router.strategies import classify_task_complexity_keywords

logger = logging.getLogger(__name__)


@dataclass
class PlanStep:
    """A single step in an execution plan"""
    step_id: int
    tool_name: str
    description: str
    args: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[int] = field(default_factory=list)
    level: int = 0


@dataclass
class ExecutionPlan:
    """Complete execution plan for a goal"""
    goal: str
    complexity: str
    steps: List[PlanStep] = field(default_factory=list)
    reasoning: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "goal": self.goal,
            "complexity": self.complexity,
            "reasoning": self.reasoning,
            "steps": [
                {
                    "step_id": s.step_id,
                    "tool_name": s.tool_name,
                    "description": s.description,
                    "args": s.args,
                    "depends_on": s.depends_on,
                    "level": s.level,
                }
                for s in self.steps
            ],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ExecutionPlan":
        if not isinstance(data, dict):
            raise ValidationError("Plan must be a JSON object")
        raw_steps = data.get("steps", [])
        if not isinstance(raw_steps, list):
            raise ValidationError("'steps' must be a list")

        steps = []
        for index, s in enumerate(raw_steps):
            if not isinstance(s, dict):
                raise ValidationError(f"Step #{index} must be an object")
            if "tool_name" not in s:
                raise ValidationError(f"Step #{index} has no tool_name")
            try:
                step_id = int(s.get("step_id", index))
                depends_on = [int(d) for d in s.get("depends_on") or []]
            except (TypeError, ValueError):
                raise ValidationError(f"Step #{index} has a non-integer step_id or depends_on")
            args = s.get("args") or {}
            if not isinstance(args, dict):
                raise ValidationError(f"Step #{index} args must be an object")
            steps.append(
                PlanStep(
                    step_id=step_id,
                    tool_name=str(s["tool_name"]),
                    description=str(s.get("description", "")),
                    args=args,
                    depends_on=depends_on,
                )
            )
        return cls(
            goal=str(data.get("goal", "")),
            complexity=str(data.get("complexity", "simple")),
            steps=steps,
            reasoning=str(data.get("reasoning", "")),
            metadata=dict(data.get("metadata") or {}),
        )


def validate_plan(plan: ExecutionPlan, tool_names: Sequence[str], max_steps: int) -> None:
    """
    Check a parsed plan against the tools advertised right now.

    Dependencies may only point at steps listed earlier, which also rules
    out cycles. Fills in each step's dependency level.
    """
    if not plan.steps:
        raise ValidationError("Plan has no steps")
    if len(plan.steps) > max_steps:
        raise ValidationError(
            f"Plan has {len(plan.steps)} steps, the limit is {max_steps}",
            step_count=len(plan.steps),
            max_steps=max_steps,
        )

    known = set(tool_names)
    levels: Dict[int, int] = {}
    for step in plan.steps:
        if step.step_id in levels:
            raise ValidationError(f"Duplicate step_id {step.step_id}", step_id=step.step_id)
        if step.tool_name not in known:
            raise ValidationError(
                f"Step {step.step_id} uses unknown tool '{step.tool_name}'. Available: {sorted(known)}",
                step_id=step.step_id,
                tool_name=step.tool_name,
            )
        for dep in step.depends_on:
            if dep not in levels:
                raise ValidationError(
                    f"Step {step.step_id} depends on {dep}, which is not an earlier step",
                    step_id=step.step_id,
                    depends_on=dep,
                )
        step.level = 1 + max((levels[d] for d in step.depends_on), default=-1)
        levels[step.step_id] = step.level


def build_steps(plan: ExecutionPlan, goal_id: str, max_attempts: int) -> List[Step]:
    """Turn a validated plan into Step records with engine-wide ids"""
    ids = {s.step_id: f"{goal_id}.step_{s.step_id}" for s in plan.steps}
    suffix = plan.metadata.get("revision", 0)
    if suffix:
        ids = {k: f"{v}.r{suffix}" for k, v in ids.items()}
    return [
        Step(
            id=ids[s.step_id],
            goal_id=goal_id,
            tool_name=s.tool_name,
            arguments=dict(s.args),
            description=s.description,
            depends_on=[ids[d] for d in s.depends_on],
            level=s.level,
            plan_ref=f"step_{s.step_id}",
            max_attempts=max_attempts,
        )
        for s in plan.steps
    ]


class Planner:
    """
    LLM-powered plan generator.

    Every plan comes from the router (model class "planning"); nothing is
    executed here.
    """

    SYSTEM_PROMPT = (
        "You are the planning engine of an autonomous goal execution engine. "
        "You only ever answer with a single JSON object describing the plan."
    )

    def __init__(self, router, tool_registry, settings: Settings):
        self.router = router
        self.tool_registry = tool_registry
        self.settings = settings

    async def create_plan(
        self,
        goal: Goal,
        memory_snapshot: Optional[Sequence[WorkingMemoryEntry]] = None,
        knowledge_context: Optional[Sequence[KnowledgeFact]] = None,
        cancel_token: Optional[CancellationToken] = None,
        failure_context: Optional[Dict[str, Any]] = None,
    ) -> ExecutionPlan:
        """
        Generate an execution plan for the goal.

        Args:
            goal: The goal being planned
            memory_snapshot: Most recent working-memory entries for the goal
            knowledge_context: Top-ranked knowledge facts
            cancel_token: The goal's cancellation token
            failure_context: On re-plan, completed outputs and the failing step's error

        Returns:
            A validated ExecutionPlan with dependency levels filled in
        """
        tool_names = self.tool_registry.list_names()
        complexity = classify_task_complexity_keywords(goal.description).value
        prompt = self._build_prompt(goal, memory_snapshot or [], knowledge_context or [], failure_context, complexity)

        attempts = 1 + max(0, self.settings.PLANNER_REPAIR_ATTEMPTS)
        decisions: List[Dict[str, Any]] = []
        last_error: Optional[ValidationError] = None

        for attempt in range(1, attempts + 1):
            request = LLMRequest.from_prompt(
                prompt,
                system=self.SYSTEM_PROMPT,
                model_class="planning",
                temperature=0.2,
                required_capabilities=frozenset({"planning"}),
            )
            try:
                outcome = await self.router.complete(
                    request,
                    strategy=self.settings.PLANNER_STRATEGY,
                    cancel_token=cancel_token,
                )
            except ProviderError as e:
                raise PlanningFailure(
                    f"Router could not produce a plan: {e.message}",
                    goal_id=goal.id,
                    provider_error=e.to_dict(),
                    route_decisions=decisions or None,
                )
            decisions.append(outcome.decision.to_dict())

            try:
                plan = ExecutionPlan.from_dict(self._parse_plan_json(outcome.response.text))
                validate_plan(plan, tool_names, self.settings.PLANNER_MAX_STEPS)
            except ValidationError as e:
                last_error = e
                logger.warning(f"Plan for {goal.id} rejected (attempt {attempt}/{attempts}): {e.message}")
                prompt = self._build_repair_prompt(prompt, outcome.response.text, e)
                continue

            plan.complexity = plan.complexity or complexity
            plan.metadata.update({
                "route_decisions": decisions,
                "planning_tokens": outcome.response.tokens_in + outcome.response.tokens_out,
                "planning_latency_ms": outcome.response.latency_ms,
                "provider": outcome.response.provider_id,
                "repair_attempts": attempt - 1,
                "revision": goal.replan_count,
            })
            logger.info(f"Plan for {goal.id}: {len(plan.steps)} steps via {outcome.response.provider_id}")
            return plan

        raise PlanningFailure(
            f"No valid plan after {attempts} attempts: {last_error.message}",
            goal_id=goal.id,
            validation_error=last_error.to_dict(),
            route_decisions=decisions,
        )

    def _build_prompt(
        self,
        goal: Goal,
        memory_snapshot: Sequence[WorkingMemoryEntry],
        knowledge_context: Sequence[KnowledgeFact],
        failure_context: Optional[Dict[str, Any]],
        complexity: str,
    ) -> str:
        tool_descriptions = self._format_tools_for_prompt(self.tool_registry.list_tools())

        context_block = ""
        if memory_snapshot:
            lines = [f"- {e.key}: {self._short(e.value)}" for e in memory_snapshot]
            context_block += "\nWORKING MEMORY (most recent entries for this goal):\n" + "\n".join(lines) + "\n"
        if knowledge_context:
            lines = [f"- [{f.category}] {f.content}" for f in knowledge_context]
            context_block += "\nRELEVANT KNOWLEDGE (lessons from earlier goals):\n" + "\n".join(lines) + "\n"

        replan_block = ""
        if failure_context:
            completed = failure_context.get("completed_outputs") or {}
            done_lines = [f"- {ref}: {self._short(output)}" for ref, output in completed.items()]
            replan_block = (
                "\nRE-PLANNING: a previous plan failed part-way.\n"
                f"Failed step: {failure_context.get('failed_step', {}).get('tool_name', '?')} "
                f": {failure_context.get('failed_step', {}).get('description', '')}\n"
                f"Error: {json.dumps(failure_context.get('error'), default=str)}\n"
                "Completed steps and outputs (do NOT repeat them, refer to them in args directly):\n"
                + ("\n".join(done_lines) if done_lines else "- (none)")
                + "\nPlan only the remaining work, avoiding the approach that failed.\n"
            )

        return f"""Analyze the goal and create a structured execution plan using the available tools.

AVAILABLE TOOLS:
{tool_descriptions}
{context_block}{replan_block}
GOAL: "{goal.description}"
PRIORITY: {goal.priority.value}

RULES:
1. Break the goal into 1-{self.settings.PLANNER_MAX_STEPS} steps using ONLY the available tools.
2. Each step must use exactly one tool by its exact name.
3. "depends_on" lists step_ids of EARLIER steps whose output this step needs.
4. A step can use a previous step's output by writing "{{step_<step_id>_output}}" inside an arg value.
5. Include every required parameter of the tool in "args".
6. Keep it minimal — don't add unnecessary steps.

Respond ONLY with valid JSON (no markdown, no extra text):
{{
    "goal": "Brief description of the overall goal",
    "complexity": "{complexity}",
    "reasoning": "Why you chose this plan",
    "steps": [
        {{
            "step_id": 0,
            "tool_name": "tool_name_here",
            "description": "What this step does",
            "args": {{"key": "value"}},
            "depends_on": []
        }}
    ]
}}"""

    def _build_repair_prompt(self, prompt: str, previous: str, error: ValidationError) -> str:
        return (
            f"{prompt}\n\n"
            f"Your previous answer was rejected.\n"
            f"PREVIOUS ANSWER:\n{previous[:2000]}\n\n"
            f"VALIDATION ERROR: {error.message}\n"
            "Return a corrected plan as a single JSON object."
        )

    def _short(self, value: Any, limit: int = 300) -> str:
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        return text if len(text) <= limit else text[:limit] + "…"

    def _format_tools_for_prompt(self, tools: List[Dict[str, Any]]) -> str:
        """Format tool schemas into a readable string for the LLM"""
        lines = []
        for i, tool in enumerate(tools, 1):
            params = tool.get("parameters", {}).get("properties", {})
            required = set(tool.get("parameters", {}).get("required", []))
            param_strs = []
            for pname, pinfo in params.items():
                flag = "" if pname in required else ", optional"
                param_strs.append(f"    - {pname} ({pinfo.get('type', 'any')}{flag}): {pinfo.get('description', '')}")
            param_block = "\n".join(param_strs) if param_strs else "    (no parameters)"

            lines.append(
                f"{i}. **{tool['name']}** [{', '.join(tool.get('capability_tags', [])) or 'custom'}]\n"
                f"   {tool['description']}\n"
                f"   Parameters:\n{param_block}"
            )
        return "\n\n".join(lines)

    def _parse_plan_json(self, text: str) -> Dict[str, Any]:
        """Extract and parse JSON from LLM response"""
        text = text.strip()

        # Try direct parse
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass

        # Try extracting JSON block
        json_start = text.find("{")
        json_end = text.rfind("}") + 1
        if json_start != -1 and json_end > json_start:
            try:
                return json.loads(text[json_start:json_end])
            except json.JSONDecodeError:
                pass

        raise ValidationError(f"Could not parse plan JSON from LLM response: {text[:200]}")
