"""
LLM Generate Tool — Routes text generation through the LLM router as an agent tool.

This is the primary tool the agent uses for text generation, analysis,
coding, reasoning, and all general-purpose LLM tasks. Provider choice is
left to the router; the tool only states what it needs.
"""
from goalengine.agent.tool_registry import Tool, ToolResult, ToolParameter, ToolCategory
from goalengine.errors import ProviderError
from goalengine.router.base import LLMRequest


class LLMGenerateTool(Tool):
    """Text generation through the LLM router"""

    cancellable = True

    def __init__(self, router):
        super().__init__(
            name="llm_generate",
            description=(
                "Generate text using an LLM. Use for answering questions, writing, "
                "analysis, coding, reasoning, summarization, and any general-purpose "
                "text generation task."
            ),
            category=ToolCategory.LLM,
            capability_tags=["llm", "text_generation", "reasoning"],
            parameters=[
                ToolParameter(
                    name="prompt",
                    type="string",
                    description="The prompt or instruction to send to the LLM",
                    required=True,
                ),
                ToolParameter(
                    name="strategy",
                    type="string",
                    description=(
                        "Routing preference. "
                        "'cost' for cheap simple tasks, 'quality' for complex reasoning/coding."
                    ),
                    required=False,
                    default="auto",
                    enum=["cost", "quality", "latency", "balanced", "auto"],
                ),
                ToolParameter(
                    name="model_class",
                    type="string",
                    description="Kind of model to use: 'chat' or 'code'.",
                    required=False,
                    default="chat",
                    enum=["chat", "code"],
                ),
                ToolParameter(
                    name="temperature",
                    type="number",
                    description="Sampling temperature 0.0-1.0. Lower = more focused, higher = more creative.",
                    required=False,
                    default=0.7,
                ),
            ],
        )
        self.router = router

    async def execute(self, **kwargs) -> ToolResult:
        """Execute LLM generation"""
        prompt = kwargs.get("prompt")
        cancel_token = kwargs.get("cancel_token")
        if not prompt:
            return ToolResult(success=False, error="'prompt' is required")

        strategy = kwargs.get("strategy") or "auto"
        model_class = kwargs.get("model_class") or "chat"
        temperature = float(kwargs.get("temperature", 0.7))
        capabilities = frozenset({"chat", model_class}) if model_class == "code" else frozenset({"chat"})

        request = LLMRequest.from_prompt(
            str(prompt),
            model_class=model_class,
            temperature=temperature,
            required_capabilities=capabilities,
        )
        try:
            outcome = await self.router.complete(request, strategy=strategy, cancel_token=cancel_token)
        except ProviderError as e:
            return ToolResult(
                success=False,
                error=f"LLM generation failed: {e.message}",
                metadata={"provider_error": e.to_dict()},
            )

        response = outcome.response
        return ToolResult(
            success=True,
            output=response.text,
            tokens_used=response.tokens_in + response.tokens_out,
            metadata={
                "model": response.model,
                "provider": response.provider_id,
                "route_decision": outcome.decision.to_dict(),
            },
        )
