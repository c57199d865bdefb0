"""Router package initialization"""
from goalengine.router.base import Capability, ChatMessage, LLMProvider, LLMRequest, LLMResponse, TokenChunk
from goalengine.router.registry import HealthStatus, Provider, ProviderRegistry
from goalengine.router.router import LLMRouter, RouteDecision, RouteOutcome, RoutedStream, StreamEvent, StreamEventType
from goalengine.router.strategies import RoutingStrategy

__all__ = [
    "Capability", "ChatMessage", "LLMProvider", "LLMRequest", "LLMResponse", "TokenChunk",
    "HealthStatus", "Provider", "ProviderRegistry",
    "LLMRouter", "RouteDecision", "RouteOutcome", "RoutedStream", "StreamEvent", "StreamEventType",
    "RoutingStrategy",
]
