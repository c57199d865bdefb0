"""
Routing strategies — rank capable providers for a request

Strategies:
1. cost     → lowest cost_per_token
2. quality  → highest static quality tier, ties broken by cost
3. latency  → lowest observed average latency
4. balanced → weighted blend of normalised cost, latency and quality
5. auto     → keyword classification of the request picks one of the above
"""
from enum import Enum
from typing import Callable, Dict, List, Tuple

from goalengine.router.base import LLMRequest
from goalengine.router.registry import HealthStatus, Provider


class RoutingStrategy(str, Enum):
    COST = "cost"
    QUALITY = "quality"
    LATENCY = "latency"
    BALANCED = "balanced"
    AUTO = "auto"


class TaskComplexity(str, Enum):
    """Task complexity classification"""
    SIMPLE = "simple"              # Facts, definitions, simple questions
    MODERATE = "moderate"          # Explanations, summaries, creative tasks
    COMPLEX = "complex"            # Multi-step reasoning, planning, deep analysis


def classify_task_complexity_keywords(user_prompt: str) -> TaskComplexity:
    """
    Keyword-based complexity classification
    """
    prompt_lower = user_prompt.lower()
    word_count = len(user_prompt.split())

    complex_keywords = [
        "analyze", "critique", "plan", "design", "create a system",
        "build", "implement", "step by step", "how would you",
        "develop", "architecture", "break down", "organize",
        "pros and cons", "trade-offs", "compare and contrast",
        "write code", "debug", "refactor", "explain the reasoning",
        "function", "strategy", "think through", "reason",
    ]

    moderate_keywords = [
        "explain", "describe", "summarize", "write", "generate",
        "list", "compare", "what are", "how to", "create",
        "story", "poem", "creative",
    ]

    if any(keyword in prompt_lower for keyword in complex_keywords) or word_count > 50:
        return TaskComplexity.COMPLEX

    if any(keyword in prompt_lower for keyword in moderate_keywords) or word_count > 20:
        return TaskComplexity.MODERATE

    return TaskComplexity.SIMPLE


AUTO_STRATEGY = {
    TaskComplexity.SIMPLE: RoutingStrategy.COST,
    TaskComplexity.MODERATE: RoutingStrategy.LATENCY,
    TaskComplexity.COMPLEX: RoutingStrategy.QUALITY,
}


def resolve_strategy(strategy: RoutingStrategy, request: LLMRequest) -> RoutingStrategy:
    if strategy is not RoutingStrategy.AUTO:
        return strategy
    return AUTO_STRATEGY[classify_task_complexity_keywords(request.last_user_message())]


def _normalise(values: List[float]) -> List[float]:
    low, high = min(values), max(values)
    if high == low:
        return [0.0 for _ in values]
    return [(v - low) / (high - low) for v in values]


def _balanced_scores(providers: List[Provider], weights: Tuple[float, float, float]) -> Dict[str, float]:
    cost_w, latency_w, quality_w = weights
    costs = _normalise([p.cost_per_token for p in providers])
    latencies = _normalise([p.avg_latency_ms for p in providers])
    qualities = _normalise([float(p.quality_tier) for p in providers])
    return {
        p.id: cost_w * c + latency_w * l - quality_w * q
        for p, c, l, q in zip(providers, costs, latencies, qualities)
    }


def sort_providers(
    providers: List[Provider],
    strategy: RoutingStrategy,
    weights: Tuple[float, float, float] = (0.4, 0.3, 0.3),
) -> List[Provider]:
    """Order providers best-first for a concrete (non-auto) strategy"""
    if strategy is RoutingStrategy.COST:
        key: Callable[[Provider], tuple] = lambda p: (p.cost_per_token, p.avg_latency_ms, p.id)
    elif strategy is RoutingStrategy.QUALITY:
        key = lambda p: (-p.quality_tier, p.cost_per_token, p.id)
    elif strategy is RoutingStrategy.LATENCY:
        key = lambda p: (p.avg_latency_ms, p.cost_per_token, p.id)
    elif strategy is RoutingStrategy.BALANCED:
        if not providers:
            return []
        scores = _balanced_scores(providers, weights)
        key = lambda p: (scores[p.id], p.id)
    else:
        raise ValueError(f"Strategy {strategy} must be resolved before sorting")
    return sorted(providers, key=key)


def rank_candidates(
    providers: List[Provider],
    request: LLMRequest,
    strategy: RoutingStrategy,
    effective_health: Callable[[Provider], HealthStatus],
    weights: Tuple[float, float, float] = (0.4, 0.3, 0.3),
) -> List[Provider]:
    """
    Capability-filtered fallback chain.

    Healthy providers come first in strategy order; degraded ones follow as
    last-resort fallbacks; unhealthy ones are left out.
    """
    concrete = resolve_strategy(strategy, request)
    capable = [p for p in providers if request.required_capabilities <= p.capabilities]
    healthy = [p for p in capable if effective_health(p) is HealthStatus.HEALTHY]
    degraded = [p for p in capable if effective_health(p) is HealthStatus.DEGRADED]
    return sort_providers(healthy, concrete, weights) + sort_providers(degraded, concrete, weights)
