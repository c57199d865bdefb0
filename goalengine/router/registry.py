"""
Provider Registry — provider id → descriptor + client

Health and latency fields are mutated only through the registry, under a
per-provider lock. Routing decisions read them without locking and tolerate
slightly stale values.
"""
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
from enum import Enum
import asyncio
import logging
import time

from goalengine.config import Settings
from goalengine.errors import NotFound
from goalengine.router.base import LLMProvider

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class Provider:
    """Routing descriptor for one provider"""
    id: str
    capabilities: frozenset
    cost_per_token: float
    avg_latency_ms: float
    quality_tier: int = 1
    health_score: float = 1.0
    health: HealthStatus = HealthStatus.HEALTHY
    consecutive_failures: int = 0
    last_failure_at: Optional[float] = None
    models: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "capabilities": sorted(self.capabilities),
            "cost_per_token": self.cost_per_token,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "quality_tier": self.quality_tier,
            "health": self.health.value,
            "health_score": round(self.health_score, 3),
            "consecutive_failures": self.consecutive_failures,
            "models": dict(self.models),
        }


@dataclass
class ProviderEntry:
    descriptor: Provider
    client: LLMProvider
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ProviderRegistry:
    """
    Central registry for LLM providers.

    Usage:
        registry = ProviderRegistry(settings)
        registry.register(GroqProvider(settings))
        entry = registry.get("groq")
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.monotonic):
        self.settings = settings
        self._clock = clock
        self._entries: Dict[str, ProviderEntry] = {}

    def register(self, client: LLMProvider) -> Provider:
        """Register a provider client and derive its routing descriptor"""
        if client.provider_id in self._entries:
            raise ValueError(f"Provider '{client.provider_id}' is already registered")
        descriptor = Provider(
            id=client.provider_id,
            capabilities=frozenset(client.capabilities),
            cost_per_token=client.cost_per_token,
            avg_latency_ms=client.declared_latency_ms,
            quality_tier=client.quality_tier,
            models=dict(client.models),
        )
        self._entries[client.provider_id] = ProviderEntry(descriptor=descriptor, client=client)
        logger.info(f"Registered provider: {client.provider_id} {sorted(client.capabilities)}")
        return descriptor

    def get(self, provider_id: str) -> ProviderEntry:
        entry = self._entries.get(provider_id)
        if entry is None:
            raise NotFound(f"Provider '{provider_id}' not registered", provider_id=provider_id)
        return entry

    def entries(self) -> List[ProviderEntry]:
        return list(self._entries.values())

    def list_providers(self) -> List[Dict[str, Any]]:
        return [entry.descriptor.to_dict() for entry in self._entries.values()]

    def count(self) -> int:
        return len(self._entries)

    def health_weights(self) -> Dict[str, float]:
        return {pid: entry.descriptor.health_score for pid, entry in self._entries.items()}

    # ─── Health / latency tracking ──────────────────────────────────────────

    def _status_for(self, score: float) -> HealthStatus:
        if score >= self.settings.HEALTH_HEALTHY_THRESHOLD:
            return HealthStatus.HEALTHY
        if score >= self.settings.HEALTH_DEGRADED_THRESHOLD:
            return HealthStatus.DEGRADED
        return HealthStatus.UNHEALTHY

    def effective_health(self, provider: Provider) -> HealthStatus:
        """Unhealthy providers get probed again as degraded once the cooldown passes"""
        if provider.health is HealthStatus.UNHEALTHY and provider.last_failure_at is not None:
            if self._clock() - provider.last_failure_at >= self.settings.HEALTH_RECOVERY_SECONDS:
                return HealthStatus.DEGRADED
        return provider.health

    async def record_success(self, provider_id: str, latency_ms: float) -> None:
        entry = self.get(provider_id)
        async with entry.lock:
            p = entry.descriptor
            alpha = self.settings.LATENCY_EMA_ALPHA
            p.avg_latency_ms = alpha * latency_ms + (1 - alpha) * p.avg_latency_ms
            p.health_score = min(1.0, p.health_score + self.settings.HEALTH_SUCCESS_REWARD)
            p.health = self._status_for(p.health_score)
            p.consecutive_failures = 0

    async def record_failure(self, provider_id: str, transient: bool) -> None:
        entry = self.get(provider_id)
        async with entry.lock:
            p = entry.descriptor
            penalty = self.settings.HEALTH_FAILURE_PENALTY
            if not transient:
                penalty *= 2
            p.health_score = max(0.0, p.health_score - penalty)
            p.health = self._status_for(p.health_score)
            p.consecutive_failures += 1
            p.last_failure_at = self._clock()
        if p.health is not HealthStatus.HEALTHY:
            logger.warning(f"Provider {provider_id} is now {p.health.value} (score={p.health_score:.2f})")

    async def adjust_weights(self, deltas: Dict[str, float]) -> None:
        """Shift health scores by the learning feedback loop's deltas"""
        for provider_id, delta in deltas.items():
            entry = self._entries.get(provider_id)
            if entry is None:
                continue
            async with entry.lock:
                p = entry.descriptor
                p.health_score = max(0.0, min(1.0, p.health_score + delta))
                p.health = self._status_for(p.health_score)
