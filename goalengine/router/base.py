"""
Provider-agnostic request/response types and the provider interface.

Every LLM backend is exposed through ``LLMProvider``: it advertises
capabilities, price and latency, and answers ``send(request)`` with a
cancellable stream of token chunks. Routing code never special-cases a
vendor.
"""
from typing import Any, AsyncIterator, Dict, FrozenSet, List, Optional
from dataclasses import dataclass
from enum import Enum
import hashlib
import json
import time


class Capability(str, Enum):
    """Capability tags a provider can advertise"""
    CHAT = "chat"
    PLANNING = "planning"
    CODE = "code"
    VISION = "vision"
    JSON = "json"


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class LLMRequest:
    """
    A provider-agnostic request.

    ``model_class`` names the kind of model wanted ("chat", "planning", ...);
    each provider maps it to one of its own model names.
    """
    messages: tuple
    model_class: str = "chat"
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    required_capabilities: FrozenSet[str] = frozenset({Capability.CHAT.value})

    @classmethod
    def from_prompt(cls, prompt: str, system: Optional[str] = None, **kwargs: Any) -> "LLMRequest":
        messages = []
        if system:
            messages.append(ChatMessage("system", system))
        messages.append(ChatMessage("user", prompt))
        return cls(messages=tuple(messages), **kwargs)

    def fingerprint(self) -> str:
        """Deterministic hash of the request, independent of who serves it"""
        payload = {
            "model_class": self.model_class,
            "messages": [m.to_dict() for m in self.messages],
            "params": {
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
                "capabilities": sorted(self.required_capabilities),
            },
        }
        encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def last_user_message(self) -> str:
        for message in reversed(self.messages):
            if message.role.lower() == "user":
                return message.content
        return ""

    def prompt_text(self) -> str:
        return "\n".join(m.content for m in self.messages)


@dataclass
class TokenChunk:
    """One increment of a streamed response"""
    text: str = ""
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    finish_reason: Optional[str] = None
    model: Optional[str] = None


@dataclass
class LLMResponse:
    """Aggregated response"""
    text: str
    provider_id: str
    model: str
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0
    finish_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "provider_id": self.provider_id,
            "model": self.model,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "latency_ms": self.latency_ms,
            "finish_reason": self.finish_reason,
        }


def estimate_tokens(text: str) -> int:
    """Rough token estimation (~4 chars per token)"""
    return max(1, len(text) // 4) if text else 0


class ProviderStream:
    """
    Cancellable stream of token chunks from one provider call.

    Wraps an async generator; ``cancel()`` closes it, which releases the
    underlying HTTP stream.
    """

    def __init__(self, chunks: AsyncIterator[TokenChunk]):
        self._chunks = chunks
        self.cancelled = False

    def __aiter__(self) -> "ProviderStream":
        return self

    async def __anext__(self) -> TokenChunk:
        return await self._chunks.__anext__()

    async def cancel(self) -> None:
        self.cancelled = True
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()


class LLMProvider:
    """
    Base class for all LLM providers.

    Subclass this and implement ``_stream()`` to add a backend. The router
    only relies on the advertised descriptor fields and ``send()``.
    """

    def __init__(
        self,
        provider_id: str,
        capabilities: FrozenSet[str],
        cost_per_token: float,
        declared_latency_ms: float,
        quality_tier: int = 1,
        models: Optional[Dict[str, str]] = None,
        default_model: str = "",
    ):
        self.provider_id = provider_id
        self.capabilities = frozenset(capabilities)
        self.cost_per_token = cost_per_token
        self.declared_latency_ms = declared_latency_ms
        self.quality_tier = quality_tier
        self.models = dict(models or {})
        self.default_model = default_model

    def model_for(self, request: LLMRequest) -> str:
        return self.models.get(request.model_class, self.default_model)

    def send(self, request: LLMRequest) -> ProviderStream:
        return ProviderStream(self._stream(request))

    async def _stream(self, request: LLMRequest) -> AsyncIterator[TokenChunk]:
        raise NotImplementedError(f"Provider '{self.provider_id}' must implement _stream()")
        yield  # pragma: no cover

    async def generate(self, request: LLMRequest) -> LLMResponse:
        """Aggregate a full response from the stream"""
        start_time = time.time()
        parts: List[str] = []
        tokens_in = tokens_out = None
        finish_reason = None
        model = self.model_for(request)
        async for chunk in self.send(request):
            parts.append(chunk.text)
            tokens_in = chunk.tokens_in if chunk.tokens_in is not None else tokens_in
            tokens_out = chunk.tokens_out if chunk.tokens_out is not None else tokens_out
            finish_reason = chunk.finish_reason or finish_reason
            model = chunk.model or model
        text = "".join(parts)
        return LLMResponse(
            text=text,
            provider_id=self.provider_id,
            model=model,
            tokens_in=tokens_in if tokens_in is not None else estimate_tokens(request.prompt_text()),
            tokens_out=tokens_out if tokens_out is not None else estimate_tokens(text),
            latency_ms=int((time.time() - start_time) * 1000),
            finish_reason=finish_reason,
        )
