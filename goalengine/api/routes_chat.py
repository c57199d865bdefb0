"""
Chat and router routes

Endpoints:
- POST /chat                One routed completion (JSON), or SSE when stream=true
- GET  /router/providers    Provider descriptors with live health/latency
- GET  /router/costs        Cost ledger totals (optional since/until/provider_id)
"""
import json
import logging

from flask import Blueprint, Response, request, jsonify
from pydantic import ValidationError as PydanticValidationError

from goalengine.api.routes_goals import get_runtime, validation_response
from goalengine.db import models
from goalengine.errors import EngineError, ValidationError
from goalengine.router.base import ChatMessage, LLMRequest

logger = logging.getLogger(__name__)

bp = Blueprint("chat", __name__)


def build_request(chat: models.ChatRequest) -> LLMRequest:
    if chat.messages:
        messages = [ChatMessage(m.role, m.content) for m in chat.messages]
        if chat.system:
            messages.insert(0, ChatMessage("system", chat.system))
    elif chat.prompt:
        messages = list(LLMRequest.from_prompt(chat.prompt, system=chat.system).messages)
    else:
        raise ValidationError("Either 'prompt' or 'messages' is required")
    return LLMRequest(
        messages=tuple(messages),
        model_class=chat.model_class,
        temperature=chat.temperature,
        max_tokens=chat.max_tokens,
        required_capabilities=frozenset(chat.capabilities or ["chat"]),
    )


@bp.route("/chat", methods=["POST"])
async def chat():
    """
    Route a chat request through the LLM router.

    Body: {"prompt": "...", "strategy": "cost", "stream": false}
    Returns: the response with its route decision, or a text/event-stream
    of token / done / partial events
    """
    data = request.get_json(silent=True) or {}
    try:
        chat_data = models.ChatRequest.model_validate(data)
    except PydanticValidationError as e:
        return validation_response(e)

    llm_request = build_request(chat_data)
    strategy = chat_data.strategy.value if chat_data.strategy else None
    runtime = get_runtime()
    router = runtime.engine.router

    if chat_data.stream:
        async def open_stream():
            return router.stream(llm_request, strategy)

        def events():
            try:
                for event in runtime.iterate(open_stream):
                    yield f"event: {event.type.value}\ndata: {json.dumps(event.to_dict())}\n\n"
            except EngineError as e:
                logger.warning(f"Chat stream failed: {e.message}")
                yield f"event: error\ndata: {json.dumps(e.to_dict())}\n\n"

        return Response(events(), mimetype="text/event-stream", headers={"Cache-Control": "no-cache"})

    outcome = await runtime.call_async(router.complete(llm_request, strategy))
    response = models.ChatResponse(
        **outcome.response.to_dict(),
        cost=outcome.cost_record.cost if outcome.cost_record else None,
        decision=models.RouteDecisionResponse(**outcome.decision.to_dict()),
    )
    return jsonify(response.model_dump())


@bp.route("/router/providers", methods=["GET"])
async def list_providers():
    registry = get_runtime().engine.providers
    providers = [models.ProviderResponse(**p).model_dump() for p in registry.list_providers()]
    return jsonify({"providers": providers, "count": len(providers)})


@bp.route("/router/costs", methods=["GET"])
async def cost_summary():
    since = request.args.get("since", type=float)
    until = request.args.get("until", type=float)
    provider_id = request.args.get("provider_id")

    ledger = get_runtime().engine.router.ledger
    summary = ledger.summary(since, until, provider_id)
    records = [r.to_dict() for r in ledger.records(since, until, provider_id)]
    return jsonify(models.CostSummaryResponse(**summary, records=records).model_dump())
