"""
Google Gemini LLM provider wrapper

Models:
- gemini-2.5-flash: planning / complex reasoning
- gemini-2.5-flash-lite: fast chat
"""
from typing import AsyncIterator, Optional

from google import genai
from google.genai import errors as genai_errors

from goalengine.config import Settings
from goalengine.errors import ProviderError, is_transient_status
from goalengine.router.base import Capability, LLMProvider, LLMRequest, TokenChunk


class GeminiProvider(LLMProvider):
    """Google Gemini API wrapper"""

    FLASH_2_5 = "gemini-2.5-flash"
    FLASH_LITE_2_5 = "gemini-2.5-flash-lite"

    def __init__(self, settings: Settings, api_key: Optional[str] = None):
        """Initialize Gemini client"""
        self.api_key = api_key or settings.GOOGLE_API_KEY
        if not self.api_key:
            raise ValueError("Google API key not configured")

        super().__init__(
            provider_id="gemini",
            capabilities=frozenset({
                Capability.CHAT.value,
                Capability.PLANNING.value,
                Capability.CODE.value,
                Capability.VISION.value,
                Capability.JSON.value,
            }),
            cost_per_token=settings.GEMINI_COST_PER_TOKEN,
            declared_latency_ms=settings.GEMINI_DECLARED_LATENCY_MS,
            quality_tier=settings.GEMINI_QUALITY_TIER,
            models={
                "chat": self.FLASH_LITE_2_5,
                "planning": self.FLASH_2_5,
                "code": self.FLASH_2_5,
            },
            default_model=self.FLASH_2_5,
        )
        self.client = genai.Client(api_key=self.api_key)

    def _contents(self, request: LLMRequest):
        system = "\n".join(m.content for m in request.messages if m.role == "system")
        contents = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in request.messages
            if m.role != "system"
        ]
        return system, contents

    async def _stream(self, request: LLMRequest) -> AsyncIterator[TokenChunk]:
        model = self.model_for(request)
        system, contents = self._contents(request)

        config = {"temperature": request.temperature}
        if request.max_tokens:
            config["max_output_tokens"] = request.max_tokens
        if system:
            config["system_instruction"] = system

        try:
            stream = await self.client.aio.models.generate_content_stream(
                model=model,
                contents=contents,
                config=config,
            )
            async for chunk in stream:
                usage = getattr(chunk, "usage_metadata", None)
                finish_reason = None
                if chunk.candidates and chunk.candidates[0].finish_reason:
                    finish_reason = str(chunk.candidates[0].finish_reason)
                yield TokenChunk(
                    text=chunk.text or "",
                    tokens_in=usage.prompt_token_count if usage else None,
                    tokens_out=usage.candidates_token_count if usage else None,
                    finish_reason=finish_reason,
                    model=model,
                )
        except genai_errors.APIError as e:
            raise ProviderError(
                f"Gemini API error: {e.message or str(e)}",
                provider_id=self.provider_id,
                transient=is_transient_status(e.code),
                status_code=e.code,
            ) from e
