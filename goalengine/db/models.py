"""
Pydantic models for request/response validation
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from enum import Enum


# ===== Enums =====

class PriorityType(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class StrategyType(str, Enum):
    COST = "cost"
    QUALITY = "quality"
    LATENCY = "latency"
    BALANCED = "balanced"
    AUTO = "auto"


# ===== Goal Models =====

class GoalCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=5000)
    priority: PriorityType = PriorityType.MEDIUM


class GoalTransition(BaseModel):
    status: str
    at: float


class GoalResponse(BaseModel):
    id: str
    description: str
    priority: str
    status: str
    plan: List[str] = []
    created_at: float
    completed_at: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    replan_count: int = 0
    context_fact_ids: List[str] = []
    history: List[GoalTransition] = []


class StepResponse(BaseModel):
    id: str
    goal_id: str
    tool_name: str
    arguments: Dict[str, Any] = {}
    description: str = ""
    depends_on: List[str] = []
    level: int = 0
    plan_ref: str = ""
    status: str
    attempt_count: int = 0
    max_attempts: int
    output: Any = None
    error: Optional[Dict[str, Any]] = None


class GoalDetailResponse(GoalResponse):
    steps: List[StepResponse] = []


# ===== Chat Models =====

class ChatMessageIn(BaseModel):
    role: str = Field(..., pattern="^(system|user|assistant)$")
    content: str


class ChatRequest(BaseModel):
    prompt: Optional[str] = None
    messages: Optional[List[ChatMessageIn]] = None
    system: Optional[str] = None
    strategy: Optional[StrategyType] = None
    model_class: str = "chat"
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1)
    capabilities: List[str] = ["chat"]
    stream: bool = False


class RouteDecisionResponse(BaseModel):
    request_fingerprint: str
    strategy: str
    chosen_provider: Optional[str] = None
    fallback_chain: List[str] = []
    cache_hit: bool = False
    attempts: List[Dict[str, Any]] = []


class ChatResponse(BaseModel):
    text: str
    provider_id: str
    model: str
    tokens_in: int
    tokens_out: int
    latency_ms: int
    finish_reason: Optional[str] = None
    cost: Optional[float] = None
    decision: RouteDecisionResponse


# ===== Router Models =====

class ProviderResponse(BaseModel):
    id: str
    capabilities: List[str]
    cost_per_token: float
    avg_latency_ms: float
    quality_tier: int
    health: str
    health_score: float
    consecutive_failures: int = 0
    models: Dict[str, str] = {}


class CostSummaryResponse(BaseModel):
    providers: Dict[str, Dict[str, Any]]
    total_cost: float
    total_tokens: int
    total_requests: int
    records: List[Dict[str, Any]] = []


# ===== Error Models =====

class ErrorResponse(BaseModel):
    detail: str
    error_code: Optional[str] = None
    context: Dict[str, Any] = {}
