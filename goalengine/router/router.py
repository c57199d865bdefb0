"""
LLM Router — the only path from the engine to language-model providers

Per request:
1. Fingerprint the provider-agnostic request
2. Serve unexpired cache hits immediately and let identical concurrent
   requests share one provider call (no cost accounting for either)
3. Rank capable providers by the requested strategy
4. Stream from the primary, falling back along the chain on failure
5. On success update latency/health, write the cache, append a CostRecord
"""
from typing import Any, AsyncIterator, Dict, List, Optional, Union
from dataclasses import dataclass, field
from enum import Enum
import asyncio
import logging
import time

from goalengine.cancellation import CancellationToken, STREAM_END, next_or_cancel, run_cancellable
from goalengine.config import Settings
from goalengine.db import queries
from goalengine.errors import OperationCancelled, OperationTimeout, ProviderError
from goalengine.router.base import LLMRequest, LLMResponse, estimate_tokens
from goalengine.router.cache import ResponseCache
from goalengine.router.cost import CostLedger, CostRecord
from goalengine.router.registry import Provider, ProviderRegistry
from goalengine.router.strategies import RoutingStrategy, rank_candidates, resolve_strategy

logger = logging.getLogger(__name__)


@dataclass
class RouteDecision:
    request_fingerprint: str
    strategy: str
    chosen_provider: Optional[str] = None
    fallback_chain: List[str] = field(default_factory=list)
    cache_hit: bool = False
    attempts: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_fingerprint": self.request_fingerprint,
            "strategy": self.strategy,
            "chosen_provider": self.chosen_provider,
            "fallback_chain": list(self.fallback_chain),
            "cache_hit": self.cache_hit,
            "attempts": [dict(a) for a in self.attempts],
        }


class StreamEventType(str, Enum):
    TOKEN = "token"
    DONE = "done"
    PARTIAL = "partial"  # stream was cancelled; text holds everything received


@dataclass
class StreamEvent:
    type: StreamEventType
    text: str = ""
    response: Optional[LLMResponse] = None
    decision: Optional[RouteDecision] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value, "text": self.text}
        if self.response is not None:
            data["response"] = self.response.to_dict()
        if self.decision is not None:
            data["decision"] = self.decision.to_dict()
        return data


@dataclass
class RouteOutcome:
    response: LLMResponse
    decision: RouteDecision
    cost_record: Optional[CostRecord] = None


class RoutedStream:
    """
    Cancellable token stream returned by ``LLMRouter.stream()``.

    Iterate it for ``StreamEvent``s. After ``cancel()`` the stream stops
    reading upstream and yields one final ``partial`` event.
    """

    def __init__(
        self,
        router: "LLMRouter",
        request: LLMRequest,
        strategy: RoutingStrategy,
        token: Optional[CancellationToken] = None,
    ):
        self.request = request
        self.decision = RouteDecision(
            request_fingerprint=request.fingerprint(),
            strategy=resolve_strategy(strategy, request).value,
        )
        self.cost_record: Optional[CostRecord] = None
        self._token = token.child() if token is not None else CancellationToken()
        self._events = router._run(request, strategy, self._token, self)

    @property
    def token(self) -> CancellationToken:
        return self._token

    def cancel(self, reason: str = "stream cancelled by consumer") -> None:
        self._token.cancel(reason)

    def __aiter__(self) -> "RoutedStream":
        return self

    async def __anext__(self) -> StreamEvent:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        await self._events.aclose()

    async def collect(self) -> RouteOutcome:
        """Aggregate the stream; a cancelled stream raises OperationCancelled"""
        async for event in self:
            if event.type is StreamEventType.DONE:
                return RouteOutcome(event.response, self.decision, self.cost_record)
            if event.type is StreamEventType.PARTIAL:
                raise OperationCancelled(
                    self._token.reason or "cancelled",
                    provider_id=self.decision.chosen_provider,
                    partial_text=event.text,
                )
        raise ProviderError("Stream ended without a response", transient=True)


class LLMRouter:
    """Selects a provider per request, streams, caches, and accounts cost"""

    def __init__(
        self,
        registry: ProviderRegistry,
        settings: Settings,
        cache: Optional[ResponseCache] = None,
        ledger: Optional[CostLedger] = None,
        store=None,
    ):
        self.registry = registry
        self.settings = settings
        self.cache = cache or ResponseCache(settings.CACHE_TTL_SECONDS, settings.CACHE_MAX_ENTRIES)
        self.ledger = ledger or CostLedger()
        self.store = store
        self._inflight: Dict[str, asyncio.Future] = {}

    def _strategy(self, strategy: Union[str, RoutingStrategy, None]) -> RoutingStrategy:
        if strategy is None:
            strategy = self.settings.ROUTING_DEFAULT_STRATEGY
        return RoutingStrategy(strategy)

    def rank(self, request: LLMRequest, strategy: Union[str, RoutingStrategy, None] = None) -> List[Provider]:
        weights = (
            self.settings.ROUTING_COST_WEIGHT,
            self.settings.ROUTING_LATENCY_WEIGHT,
            self.settings.ROUTING_QUALITY_WEIGHT,
        )
        return rank_candidates(
            [entry.descriptor for entry in self.registry.entries()],
            request,
            self._strategy(strategy),
            self.registry.effective_health,
            weights,
        )

    def stream(
        self,
        request: LLMRequest,
        strategy: Union[str, RoutingStrategy, None] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RoutedStream:
        return RoutedStream(self, request, self._strategy(strategy), cancel_token)

    async def complete(
        self,
        request: LLMRequest,
        strategy: Union[str, RoutingStrategy, None] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RouteOutcome:
        return await self.stream(request, strategy, cancel_token).collect()

    async def _bill(self, provider: Provider, response: LLMResponse, partial: bool = False) -> CostRecord:
        record = self.ledger.append(
            provider_id=provider.id,
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
            cost_per_token=provider.cost_per_token,
            partial=partial,
        )
        if self.store is not None:
            await queries.append_cost_record(self.store, record)
        return record

    async def _run(
        self,
        request: LLMRequest,
        strategy: RoutingStrategy,
        token: CancellationToken,
        stream: RoutedStream,
    ) -> AsyncIterator[StreamEvent]:
        decision = stream.decision
        fingerprint = decision.request_fingerprint

        cached = self.cache.get(fingerprint)
        if cached is not None:
            logger.debug(f"Cache hit {fingerprint[:12]} ({cached.response.provider_id})")
            for event in self._replay(cached.response, decision):
                yield event
            return

        inflight: Optional[asyncio.Future] = None
        if self.cache.ttl_seconds > 0:
            leader = self._inflight.get(fingerprint)
            if leader is not None:
                try:
                    shared = await run_cancellable(asyncio.shield(leader), token)
                except OperationCancelled:
                    yield StreamEvent(StreamEventType.PARTIAL, text="", decision=decision)
                    return
                if shared is not None:
                    logger.debug(f"Joined in-flight request {fingerprint[:12]} ({shared.provider_id})")
                    for event in self._replay(shared, decision):
                        yield event
                    return
                # the leader failed or was cancelled; route independently
            inflight = asyncio.get_running_loop().create_future()
            self._inflight[fingerprint] = inflight

        events = self._route(request, strategy, token, stream)
        try:
            async for event in events:
                if inflight is not None and event.type is StreamEventType.DONE:
                    inflight.set_result(event.response)
                yield event
        finally:
            if inflight is not None:
                if self._inflight.get(fingerprint) is inflight:
                    del self._inflight[fingerprint]
                if not inflight.done():
                    inflight.set_result(None)
            await events.aclose()

    def _replay(self, response: LLMResponse, decision: RouteDecision) -> List[StreamEvent]:
        """Serve an already-paid-for response: not billed again"""
        decision.cache_hit = True
        decision.chosen_provider = response.provider_id
        return [
            StreamEvent(StreamEventType.TOKEN, text=response.text),
            StreamEvent(StreamEventType.DONE, text=response.text, response=response, decision=decision),
        ]

    async def _route(
        self,
        request: LLMRequest,
        strategy: RoutingStrategy,
        token: CancellationToken,
        stream: RoutedStream,
    ) -> AsyncIterator[StreamEvent]:
        decision = stream.decision

        chain = self.rank(request, strategy)[: self.settings.ROUTER_MAX_ATTEMPTS]
        decision.fallback_chain = [p.id for p in chain]
        if not chain:
            raise ProviderError(
                "No healthy provider offers the required capabilities",
                transient=False,
                capabilities=sorted(request.required_capabilities),
            )

        for provider in chain:
            if token.cancelled:
                yield StreamEvent(StreamEventType.PARTIAL, text="", decision=decision)
                return

            client = self.registry.get(provider.id).client
            upstream = client.send(request)
            parts: List[str] = []
            tokens_in = tokens_out = None
            finish_reason = None
            model = client.model_for(request)
            start = time.monotonic()
            error: Optional[ProviderError] = None
            finished = False

            try:
                while True:
                    try:
                        chunk = await next_or_cancel(upstream, token, self.settings.PROVIDER_TIMEOUT_SECONDS)
                    except OperationCancelled:
                        await upstream.cancel()
                        finished = True
                        text = "".join(parts)
                        decision.chosen_provider = provider.id
                        decision.attempts.append({"provider_id": provider.id, "outcome": "cancelled"})
                        if parts:
                            partial = LLMResponse(
                                text=text,
                                provider_id=provider.id,
                                model=model,
                                tokens_in=tokens_in if tokens_in is not None else estimate_tokens(request.prompt_text()),
                                tokens_out=estimate_tokens(text),
                                latency_ms=int((time.monotonic() - start) * 1000),
                                finish_reason="cancelled",
                            )
                            stream.cost_record = await self._bill(provider, partial, partial=True)
                        logger.info(f"Stream from {provider.id} cancelled after {len(text)} chars")
                        yield StreamEvent(StreamEventType.PARTIAL, text=text, decision=decision)
                        return

                    if chunk is STREAM_END:
                        finished = True
                        break
                    if chunk.tokens_in is not None:
                        tokens_in = chunk.tokens_in
                    if chunk.tokens_out is not None:
                        tokens_out = chunk.tokens_out
                    finish_reason = chunk.finish_reason or finish_reason
                    model = chunk.model or model
                    if chunk.text:
                        parts.append(chunk.text)
                        yield StreamEvent(StreamEventType.TOKEN, text=chunk.text)
            except OperationTimeout as e:
                error = ProviderError(
                    f"{provider.id} timed out: {e.message}",
                    provider_id=provider.id,
                    transient=True,
                )
            except ProviderError as e:
                error = e
                if error.provider_id is None:
                    error.provider_id = provider.id
            except Exception as e:
                logger.exception(f"Unexpected error from provider {provider.id}")
                error = ProviderError(
                    f"{provider.id} failed: {type(e).__name__}: {str(e)}",
                    provider_id=provider.id,
                    transient=True,
                )
            finally:
                if not finished:
                    await upstream.cancel()

            if error is not None:
                await self.registry.record_failure(provider.id, error.transient)
                decision.attempts.append({
                    "provider_id": provider.id,
                    "outcome": "failure",
                    "severity": error.severity,
                    "error": error.message,
                })
                logger.warning(f"Provider {provider.id} failed ({error.severity}): {error.message}")
                if parts:
                    # Tokens already reached the consumer, no clean fallback possible
                    error.context["partial_text"] = "".join(parts)
                    error.context["attempts"] = list(decision.attempts)
                    raise error
                continue

            text = "".join(parts)
            latency_ms = int((time.monotonic() - start) * 1000)
            response = LLMResponse(
                text=text,
                provider_id=provider.id,
                model=model,
                tokens_in=tokens_in if tokens_in is not None else estimate_tokens(request.prompt_text()),
                tokens_out=tokens_out if tokens_out is not None else estimate_tokens(text),
                latency_ms=latency_ms,
                finish_reason=finish_reason,
            )
            await self.registry.record_success(provider.id, latency_ms)
            self.cache.put(decision.request_fingerprint, response)
            stream.cost_record = await self._bill(provider, response)
            decision.chosen_provider = provider.id
            decision.attempts.append({"provider_id": provider.id, "outcome": "success"})
            logger.info(
                f"Routed via {provider.id} [{decision.strategy}] {latency_ms}ms "
                f"{response.tokens_in}+{response.tokens_out} tokens"
            )
            yield StreamEvent(StreamEventType.DONE, text=text, response=response, decision=decision)
            return

        transient = any(a.get("severity") == "transient" for a in decision.attempts)
        raise ProviderError(
            f"All providers failed: {', '.join(decision.fallback_chain)}",
            provider_id=decision.attempts[-1]["provider_id"] if decision.attempts else None,
            transient=transient,
            attempts=list(decision.attempts),
        )
