"""
Application configuration management using pydantic-settings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Engine settings loaded from environment variables"""

    # Persistence - MongoDB (empty URI keeps everything in memory)
    MONGODB_URI: str = ""
    MONGODB_DB_NAME: str = "goal_engine"

    # LLM Provider - Google Gemini
    GOOGLE_API_KEY: str = ""
    GEMINI_COST_PER_TOKEN: float = 0.0000003
    GEMINI_DECLARED_LATENCY_MS: float = 900.0
    GEMINI_QUALITY_TIER: int = 3

    # LLM Provider - Groq (OpenAI-compatible)
    GROQ_API_KEY: str = ""
    GROQ_BASE_URL: str = "https://api.groq.com/openai/v1"
    GROQ_COST_PER_TOKEN: float = 0.00000015
    GROQ_DECLARED_LATENCY_MS: float = 350.0
    GROQ_QUALITY_TIER: int = 2

    # Router
    ROUTING_DEFAULT_STRATEGY: str = "auto"
    ROUTER_MAX_ATTEMPTS: int = 3
    PROVIDER_TIMEOUT_SECONDS: float = 60.0
    LATENCY_EMA_ALPHA: float = 0.2
    CACHE_TTL_SECONDS: float = 300.0
    CACHE_MAX_ENTRIES: int = 512
    ROUTING_COST_WEIGHT: float = 0.4
    ROUTING_LATENCY_WEIGHT: float = 0.3
    ROUTING_QUALITY_WEIGHT: float = 0.3

    # Provider health
    HEALTH_SUCCESS_REWARD: float = 0.1
    HEALTH_FAILURE_PENALTY: float = 0.25
    HEALTH_HEALTHY_THRESHOLD: float = 0.7
    HEALTH_DEGRADED_THRESHOLD: float = 0.3
    HEALTH_RECOVERY_SECONDS: float = 60.0

    # Planner
    PLANNER_REPAIR_ATTEMPTS: int = 1
    PLANNER_MAX_STEPS: int = 10
    PLANNER_MEMORY_WINDOW: int = 10
    PLANNER_KNOWLEDGE_TOP_K: int = 5
    PLANNER_STRATEGY: str = "quality"
    KNOWLEDGE_HALF_LIFE_SECONDS: float = 86400.0

    # Executor
    STEP_MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_BASE_SECONDS: float = 0.5
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_BACKOFF_MAX_SECONDS: float = 10.0
    TOOL_TIMEOUT_SECONDS: float = 60.0
    MAX_PARALLEL_STEPS: int = 1
    MAX_REPLANS: int = 2

    # Working memory
    WORKING_MEMORY_TTL_SECONDS: float = 3600.0

    # Resource manager / admission
    MAX_EXECUTING_GOALS: int = 4
    RESOURCE_MEMORY_CEILING: float = 0.9
    RESOURCE_CPU_CEILING: float = 0.95
    RESOURCE_POLL_INTERVAL_SECONDS: float = 2.0
    ADMISSION_POLL_INTERVAL_SECONDS: float = 0.5
    STOP_GRACE_SECONDS: float = 5.0
    CANCEL_GRACE_SECONDS: float = 1.0
    GOAL_RETENTION_SECONDS: float = 3600.0

    # Learning
    LEARNING_ENABLED: bool = True
    LEARNING_FAILURE_THRESHOLD: int = 2

    # Built-in tools
    WORKSPACE_DIR: str = "./workspace"

    # Application
    APP_NAME: str = "goal-engine"
    APP_VERSION: str = "0.3.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]


# Global settings instance
settings = Settings()
