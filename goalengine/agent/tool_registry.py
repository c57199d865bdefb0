"""
Tool Registry — Central registry for executable tools

Each tool is a self-describing, executable unit that the planner can discover
(name, capability tags, parameters) and the executor can invoke by name.
"""
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from enum import Enum
import asyncio
import logging
import time
import traceback

from goalengine.cancellation import CancellationToken
from goalengine.errors import OperationCancelled, ValidationError

logger = logging.getLogger(__name__)


class ToolCategory(str, Enum):
    """Categories for tool classification"""
    LLM = "llm"
    FILE_SYSTEM = "file_system"
    CUSTOM = "custom"


@dataclass
class ToolResult:
    """Result returned by a tool execution"""
    success: bool
    output: Any = None
    error: Optional[str] = None
    latency_ms: int = 0
    tokens_used: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolParameter:
    """Describes a single tool parameter"""
    name: str
    type: str  # "string", "integer", "boolean", "object", "array"
    description: str
    required: bool = True
    default: Any = None
    enum: Optional[List[str]] = None


class Tool:
    """
    Base class for all tools.

    Subclass this and implement `execute()` to create a new tool.
    The planner uses `name`, `description`, `capability_tags` and
    `parameters` to decide when and how to invoke the tool.

    Tools that set `cancellable = True` receive the step's cancellation
    token as the `cancel_token` keyword argument.
    """

    cancellable = False

    def __init__(
        self,
        name: str,
        description: str,
        category: ToolCategory = ToolCategory.CUSTOM,
        parameters: Optional[List[ToolParameter]] = None,
        capability_tags: Optional[List[str]] = None,
    ):
        self.name = name
        self.description = description
        self.category = category
        self.parameters = parameters or []
        self.capability_tags = list(capability_tags or [category.value])

    async def execute(self, **kwargs) -> ToolResult:
        """
        Execute the tool with given arguments.
        Must be overridden by subclasses.
        """
        raise NotImplementedError(f"Tool '{self.name}' must implement execute()")

    def advertise(self) -> Dict[str, Any]:
        return {"name": self.name, "capability_tags": list(self.capability_tags)}

    def to_schema(self) -> Dict[str, Any]:
        """
        Export tool as a JSON-serializable schema for LLM consumption.
        The planner prompt includes this so the LLM knows what tools exist.
        """
        params = {}
        required = []
        for p in self.parameters:
            param_schema = {
                "type": p.type,
                "description": p.description,
            }
            if p.enum:
                param_schema["enum"] = p.enum
            if p.default is not None:
                param_schema["default"] = p.default
            params[p.name] = param_schema
            if p.required:
                required.append(p.name)

        return {
            "name": self.name,
            "description": self.description,
            "category": self.category.value,
            "capability_tags": list(self.capability_tags),
            "parameters": {
                "type": "object",
                "properties": params,
                "required": required,
            },
        }


class ToolRegistry:
    """
    Central registry for all tools.

    Usage:
        registry = ToolRegistry()
        registry.register(MyTool())
        result = await registry.invoke("my_tool", {"arg1": "value"})
    """

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool in the registry"""
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.info(f"Registered tool: {tool.name} {tool.capability_tags}")

    def get(self, name: str) -> Optional[Tool]:
        """Get a tool by name"""
        return self._tools.get(name)

    def list_tools(self) -> List[Dict[str, Any]]:
        """List all tools as schemas (for LLM consumption)"""
        return [tool.to_schema() for tool in self._tools.values()]

    def advertised(self) -> List[Dict[str, Any]]:
        """The capability set the planner validates plans against"""
        return [tool.advertise() for tool in self._tools.values()]

    def list_names(self) -> List[str]:
        """List all registered tool names"""
        return list(self._tools.keys())

    def count(self) -> int:
        """Number of registered tools"""
        return len(self._tools)

    def validate_arguments(self, tool_name: str, arguments: Dict[str, Any]) -> Tool:
        tool = self._tools.get(tool_name)
        if not tool:
            raise ValidationError(
                f"Tool '{tool_name}' not found. Available: {self.list_names()}",
                tool_name=tool_name,
            )
        if not isinstance(arguments, dict):
            raise ValidationError(f"Arguments for '{tool_name}' must be an object", tool_name=tool_name)
        missing = [p.name for p in tool.parameters if p.required and p.name not in arguments]
        if missing:
            raise ValidationError(
                f"Tool '{tool_name}' is missing required arguments: {missing}",
                tool_name=tool_name,
                missing=missing,
            )
        return tool

    async def invoke(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        cancel_token: Optional[CancellationToken] = None,
    ) -> ToolResult:
        """
        Execute a tool by name with given arguments.
        Handles timing, error catching, and result normalization.
        Unknown tools and missing arguments raise ValidationError;
        cancellation propagates.
        """
        tool = self.validate_arguments(tool_name, arguments)
        kwargs = dict(arguments)
        if tool.cancellable and cancel_token is not None:
            kwargs["cancel_token"] = cancel_token

        start_time = time.time()
        try:
            result = await tool.execute(**kwargs)
            if not isinstance(result, ToolResult):
                result = ToolResult(success=True, output=result)
            result.latency_ms = int((time.time() - start_time) * 1000)
            return result
        except (asyncio.CancelledError, OperationCancelled):
            raise
        except Exception as e:
            latency_ms = int((time.time() - start_time) * 1000)
            return ToolResult(
                success=False,
                error=f"{type(e).__name__}: {str(e)}",
                latency_ms=latency_ms,
                metadata={"traceback": traceback.format_exc()},
            )
