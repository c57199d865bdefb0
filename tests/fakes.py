from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Union

from goalengine.agent.resources import ResourceSnapshot
from goalengine.agent.tool_registry import Tool, ToolCategory, ToolParameter, ToolResult
from goalengine.config import Settings
from goalengine.errors import ProviderError
from goalengine.router.base import LLMProvider, LLMRequest, TokenChunk

Reply = Union[str, Callable[[LLMRequest], str]]


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "MONGODB_URI": "",
        "GROQ_API_KEY": "",
        "GOOGLE_API_KEY": "",
        "RETRY_BACKOFF_BASE_SECONDS": 0.0,
        "RETRY_BACKOFF_MAX_SECONDS": 0.0,
        "ADMISSION_POLL_INTERVAL_SECONDS": 0.01,
        "RESOURCE_POLL_INTERVAL_SECONDS": 0.05,
        "STOP_GRACE_SECONDS": 0.5,
        "CANCEL_GRACE_SECONDS": 0.2,
        "TOOL_TIMEOUT_SECONDS": 5.0,
        "PROVIDER_TIMEOUT_SECONDS": 5.0,
        "CACHE_TTL_SECONDS": 300.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def plan_json(*steps: Dict[str, Any], goal: str = "test goal") -> str:
    """Planner-format JSON for the given steps; step_id defaults to position"""
    return json.dumps({
        "goal": goal,
        "complexity": "simple",
        "reasoning": "test plan",
        "steps": [
            {
                "step_id": step.get("step_id", index),
                "tool_name": step["tool_name"],
                "description": step.get("description", step["tool_name"]),
                "args": step.get("args", {}),
                "depends_on": step.get("depends_on", []),
            }
            for index, step in enumerate(steps)
        ],
    })


class FakeProvider(LLMProvider):
    """
    Scripted provider.

    ``replies`` are served in order (the last one repeats). ``failures`` are
    raised on the first calls, one per call; ``None`` means that call works.
    """

    def __init__(
        self,
        provider_id: str = "fake",
        replies: Optional[Sequence[Reply]] = None,
        cost_per_token: float = 0.01,
        latency_ms: float = 100.0,
        quality_tier: int = 1,
        capabilities: Iterable[str] = ("chat", "planning", "json", "code"),
        failures: Optional[Sequence[Optional[Exception]]] = None,
        token_delay: float = 0.0,
        fail_after_tokens: Optional[int] = None,
        report_usage: bool = True,
    ) -> None:
        super().__init__(
            provider_id=provider_id,
            capabilities=frozenset(capabilities),
            cost_per_token=cost_per_token,
            declared_latency_ms=latency_ms,
            quality_tier=quality_tier,
            models={"chat": f"{provider_id}-chat", "planning": f"{provider_id}-plan"},
            default_model=f"{provider_id}-chat",
        )
        self.replies: List[Reply] = list(replies or ["hello from " + provider_id])
        self.failures: List[Optional[Exception]] = list(failures or [])
        self.token_delay = token_delay
        self.fail_after_tokens = fail_after_tokens
        self.report_usage = report_usage
        self.calls: List[LLMRequest] = []
        self.closed = 0

    def _next_reply(self, request: LLMRequest) -> str:
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        return reply(request) if callable(reply) else reply

    async def _stream(self, request: LLMRequest) -> AsyncIterator[TokenChunk]:
        self.calls.append(request)
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        text = self._next_reply(request)
        pieces = [text[i:i + 4] for i in range(0, len(text), 4)] or [""]
        try:
            for index, piece in enumerate(pieces):
                if self.fail_after_tokens is not None and index == self.fail_after_tokens:
                    raise ProviderError("connection reset", provider_id=self.provider_id, transient=True)
                if self.token_delay:
                    await asyncio.sleep(self.token_delay)
                yield TokenChunk(text=piece, model=self.model_for(request))
            if self.report_usage:
                yield TokenChunk(tokens_in=10, tokens_out=5, finish_reason="stop")
        finally:
            self.closed += 1


def planner_reply(plan: str, text: str = "generated text") -> Callable[[LLMRequest], str]:
    """Serve ``plan`` to planning requests and ``text`` to everything else"""
    def reply(request: LLMRequest) -> str:
        return plan if request.model_class == "planning" else text
    return reply


def transient(provider_id: str = "fake", status_code: int = 503) -> ProviderError:
    return ProviderError("service unavailable", provider_id=provider_id, transient=True, status_code=status_code)


def permanent(provider_id: str = "fake", status_code: int = 401) -> ProviderError:
    return ProviderError("invalid api key", provider_id=provider_id, transient=False, status_code=status_code)


class EchoTool(Tool):
    def __init__(self) -> None:
        super().__init__(
            name="echo",
            description="Return the message unchanged",
            category=ToolCategory.CUSTOM,
            capability_tags=["test", "echo"],
            parameters=[ToolParameter(name="message", type="string", description="Message", required=True)],
        )
        self.calls: List[Dict[str, Any]] = []

    async def execute(self, **kwargs: Any) -> ToolResult:
        self.calls.append(dict(kwargs))
        return ToolResult(success=True, output=kwargs["message"])


class FlakyTool(Tool):
    """Reports failure for the first ``failures`` calls"""

    def __init__(self, failures: int, name: str = "flaky") -> None:
        super().__init__(name=name, description="Fails a few times", capability_tags=["test"])
        self.failures = failures
        self.calls = 0

    async def execute(self, **kwargs: Any) -> ToolResult:
        self.calls += 1
        if self.calls <= self.failures:
            return ToolResult(success=False, error=f"flaky failure #{self.calls}")
        return ToolResult(success=True, output=f"ok after {self.calls}")


class BrokenTool(Tool):
    def __init__(self) -> None:
        super().__init__(name="broken", description="Always raises", capability_tags=["test"])
        self.calls = 0

    async def execute(self, **kwargs: Any) -> ToolResult:
        self.calls += 1
        raise RuntimeError("boom")


class SlowTool(Tool):
    def __init__(self, delay: float = 10.0) -> None:
        super().__init__(name="slow", description="Sleeps", capability_tags=["test"])
        self.delay = delay
        self.started = asyncio.Event()
        self.cancelled = False

    async def execute(self, **kwargs: Any) -> ToolResult:
        self.started.set()
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ToolResult(success=True, output="slow done")


def fixed_sampler(cpu: float = 0.1, memory: float = 0.2) -> Callable[[], ResourceSnapshot]:
    def sample() -> ResourceSnapshot:
        return ResourceSnapshot(cpu_fraction=cpu, memory_fraction=memory, sampled_at=time.time())
    return sample


class MutableSampler:
    def __init__(self, cpu: float = 0.1, memory: float = 0.2) -> None:
        self.cpu = cpu
        self.memory = memory

    def __call__(self) -> ResourceSnapshot:
        return ResourceSnapshot(cpu_fraction=self.cpu, memory_fraction=self.memory, sampled_at=time.time())
