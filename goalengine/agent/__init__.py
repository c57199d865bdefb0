"""
Agent package — Goal orchestration engine

Components:
- ToolRegistry: Register and discover executable tools
- Planner: LLM-powered plan generation (through the router)
- StepExecutor: Step state machines, retries, working-memory writes
- WorkingMemory / KnowledgeBase: Short-term + long-term memory
- ResourceManager: Host sampling and goal admission
- LearningSystem: Post-goal feedback into knowledge and provider weights
- GoalOrchestrator: Goal state machine tying it all together
"""
from goalengine.agent.tool_registry import ToolRegistry, Tool, ToolResult, ToolParameter, ToolCategory
from goalengine.agent.models import Goal, GoalStatus, GoalPriority, Step, StepStatus
from goalengine.agent.memory import WorkingMemory, KnowledgeBase, KnowledgeFact
from goalengine.agent.planner import Planner, ExecutionPlan, PlanStep
from goalengine.agent.executor import StepExecutor, ExecutionOutcome
from goalengine.agent.resources import ResourceManager, ResourceSnapshot, AdmissionToken
from goalengine.agent.learning import LearningSystem, GoalTrace
from goalengine.agent.orchestrator import GoalOrchestrator

__all__ = [
    "ToolRegistry", "Tool", "ToolResult", "ToolParameter", "ToolCategory",
    "Goal", "GoalStatus", "GoalPriority", "Step", "StepStatus",
    "WorkingMemory", "KnowledgeBase", "KnowledgeFact",
    "Planner", "ExecutionPlan", "PlanStep",
    "StepExecutor", "ExecutionOutcome",
    "ResourceManager", "ResourceSnapshot", "AdmissionToken",
    "LearningSystem", "GoalTrace",
    "GoalOrchestrator",
]
