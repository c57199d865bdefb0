"""
Error taxonomy shared by the orchestration engine and the LLM router.

Every error carries a machine-readable ``kind`` plus a context dict (step id,
attempt count, provider id, ...) so user-visible failures can be diagnosed
without re-running the goal.
"""
from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base class for all engine errors"""

    kind = "engine_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "context": dict(self.context),
        }

    def __str__(self) -> str:
        return self.message


class NotFound(EngineError):
    kind = "not_found"


class ValidationError(EngineError):
    """Bad plan, unknown tool or malformed arguments. Never retried."""

    kind = "validation_error"


class ToolInvocationError(EngineError):
    """A tool reported failure; retried per step policy"""

    kind = "tool_invocation_error"


class OperationTimeout(EngineError):
    kind = "timeout"


class OperationCancelled(EngineError):
    kind = "cancelled"


class ResourceExhausted(EngineError):
    """Admission refused. Delays the goal, never surfaced to callers."""

    kind = "resource_exhausted"


class PlanningFailure(EngineError):
    kind = "planning_failure"


class InvalidTransition(EngineError):
    kind = "invalid_transition"


class ProviderError(EngineError):
    """
    Failure talking to an LLM provider.

    Transient errors (timeouts, 5xx, rate limits, connection resets) advance
    the router to the next provider in the fallback chain. Permanent errors
    drop the provider from the current attempt.
    """

    kind = "provider_error"

    def __init__(
        self,
        message: str,
        provider_id: Optional[str] = None,
        transient: bool = True,
        status_code: Optional[int] = None,
        attempts: Optional[List[Dict[str, Any]]] = None,
        **context: Any,
    ):
        super().__init__(
            message,
            provider_id=provider_id,
            status_code=status_code,
            attempts=attempts,
            **context,
        )
        self.provider_id = provider_id
        self.transient = transient
        self.status_code = status_code
        self.attempts = attempts or []

    @property
    def severity(self) -> str:
        return "transient" if self.transient else "permanent"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["severity"] = self.severity
        return data


def is_transient_status(status_code: Optional[int]) -> bool:
    """5xx-class responses, rate limits and request timeouts are worth a fallback"""
    if status_code is None:
        return True
    return status_code >= 500 or status_code in (408, 409, 429)
