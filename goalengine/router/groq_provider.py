"""
Groq LLM provider wrapper (OpenAI-compatible API)

Any OpenAI-compatible endpoint can be routed through
``OpenAICompatibleProvider``; Groq is the one shipped by default.
"""
from typing import AsyncIterator, Dict, FrozenSet, Optional

import openai
from openai import AsyncOpenAI

from goalengine.config import Settings
from goalengine.errors import ProviderError, is_transient_status
from goalengine.router.base import Capability, LLMProvider, LLMRequest, TokenChunk


class OpenAICompatibleProvider(LLMProvider):
    """Streams chat completions from any OpenAI-compatible API"""

    def __init__(
        self,
        provider_id: str,
        api_key: str,
        base_url: Optional[str],
        capabilities: FrozenSet[str],
        cost_per_token: float,
        declared_latency_ms: float,
        quality_tier: int,
        models: Dict[str, str],
        default_model: str,
    ):
        if not api_key:
            raise ValueError(f"{provider_id} API key not configured")
        super().__init__(
            provider_id=provider_id,
            capabilities=capabilities,
            cost_per_token=cost_per_token,
            declared_latency_ms=declared_latency_ms,
            quality_tier=quality_tier,
            models=models,
            default_model=default_model,
        )
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def _stream(self, request: LLMRequest) -> AsyncIterator[TokenChunk]:
        model = self.model_for(request)
        kwargs = {
            "model": model,
            "messages": [m.to_dict() for m in request.messages],
            "temperature": request.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.max_tokens:
            kwargs["max_tokens"] = request.max_tokens

        try:
            stream = await self.client.chat.completions.create(**kwargs)
            async for chunk in stream:
                usage = getattr(chunk, "usage", None)
                text = ""
                finish_reason = None
                if chunk.choices:
                    choice = chunk.choices[0]
                    if choice.delta and choice.delta.content:
                        text = choice.delta.content
                    finish_reason = choice.finish_reason
                yield TokenChunk(
                    text=text,
                    tokens_in=usage.prompt_tokens if usage else None,
                    tokens_out=usage.completion_tokens if usage else None,
                    finish_reason=finish_reason,
                    model=chunk.model or model,
                )
        except openai.APIStatusError as e:
            raise ProviderError(
                f"{self.provider_id} API error: {e.message}",
                provider_id=self.provider_id,
                transient=is_transient_status(e.status_code),
                status_code=e.status_code,
            ) from e
        except (openai.APITimeoutError, openai.APIConnectionError) as e:
            raise ProviderError(
                f"{self.provider_id} connection error: {str(e)}",
                provider_id=self.provider_id,
                transient=True,
            ) from e


class GroqProvider(OpenAICompatibleProvider):
    """Groq API wrapper using OpenAI-compatible client"""

    # Available models
    GPT_OSS_120B = "openai/gpt-oss-120b"
    GPT_OSS_20B = "openai/gpt-oss-20b"

    def __init__(self, settings: Settings, api_key: Optional[str] = None):
        super().__init__(
            provider_id="groq",
            api_key=api_key or settings.GROQ_API_KEY,
            base_url=settings.GROQ_BASE_URL,
            capabilities=frozenset({Capability.CHAT.value, Capability.JSON.value, Capability.PLANNING.value}),
            cost_per_token=settings.GROQ_COST_PER_TOKEN,
            declared_latency_ms=settings.GROQ_DECLARED_LATENCY_MS,
            quality_tier=settings.GROQ_QUALITY_TIER,
            models={
                "chat": self.GPT_OSS_20B,
                "planning": self.GPT_OSS_120B,
                "code": self.GPT_OSS_120B,
            },
            default_model=self.GPT_OSS_120B,
        )
