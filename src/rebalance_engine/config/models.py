"""Pydantic models for rebalance engine configuration with validation."""

from typing import Literal
from pydantic import BaseModel, Field, field_validator


class EngineConfig(BaseModel):
    """Rebalance run defaults."""

    default_target_cash_percent: float = Field(
        default=20.0,
        ge=0.0,
        le=100.0,
        description="Target cash floor used when a request does not specify one"
    )
    default_risk_profile: Literal["conservative", "moderate", "aggressive"] = Field(
        default="moderate",
        description="Risk profile used by the allocation planner when settings omit it"
    )
    noise_floor_percent: float = Field(
        default=0.5,
        ge=0.0,
        le=5.0,
        description="Deployable cash below this share of the portfolio is treated as exhausted"
    )
    default_price: float = Field(
        default=100.0,
        gt=0.0,
        description="Fallback share price when neither analysis nor broker provide one"
    )


class ExtractionConfig(BaseModel):
    """Retry policy for decision and extraction generation calls."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts for each generation call"
    )
    base_output_budget: int = Field(
        default=1500,
        ge=100,
        le=32000,
        description="Output-length budget for the first attempt"
    )
    budget_increment: int = Field(
        default=300,
        ge=0,
        le=4000,
        description="Budget added on each further attempt"
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="Base delay between attempts, multiplied by the attempt number"
    )
    credit_buffer: int = Field(
        default=100,
        ge=0,
        le=1000,
        description="Units subtracted from an 'can only afford N' signal before retrying"
    )
    max_reduced_budget: int = Field(
        default=1500,
        ge=100,
        le=32000,
        description="Ceiling for the reduced budget retry after a credits error"
    )
    reasoning_output_budget: int = Field(
        default=2000,
        ge=100,
        le=32000,
        description="Budget for the detailed reasoning call"
    )


class SizingConfig(BaseModel):
    """Position-size defaults applied when user settings omit them."""

    min_position_percent: float = Field(
        default=5.0,
        ge=0.0,
        le=100.0,
        description="Minimum position size as a percentage of portfolio value"
    )
    max_position_percent: float = Field(
        default=25.0,
        ge=0.0,
        le=100.0,
        description="Maximum position size as a percentage of portfolio value"
    )
    stop_loss_percent: float = Field(
        default=10.0,
        ge=0.0,
        le=100.0,
        description="Decline tolerated below the minimum position before closing it"
    )
    profit_target_percent: float = Field(
        default=25.0,
        ge=0.0,
        le=1000.0,
        description="Profit target forwarded to prompts"
    )

    @field_validator('max_position_percent')
    @classmethod
    def validate_max_over_min(cls, v: float, info) -> float:
        """Ensure max position is not below min position."""
        minimum = info.data.get('min_position_percent')
        if minimum is not None and v < minimum:
            raise ValueError(f"max_position_percent ({v}) must be >= min_position_percent ({minimum})")
        return v


class WatchdogConfig(BaseModel):
    """Durable task retry policy."""

    timeout_seconds: float = Field(
        default=180.0,
        ge=1.0,
        le=3600.0,
        description="Wall-clock bound for a single rebalance attempt"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts per queued rebalance task"
    )
    retry_delay_seconds: float = Field(
        default=3.0,
        ge=0.0,
        le=600.0,
        description="Delay before a failed attempt is re-queued"
    )
    promote_interval_seconds: int = Field(
        default=5,
        ge=1,
        le=300,
        description="How often delayed tasks are moved back to the main queue"
    )
    max_concurrent_tasks: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum rebalance tasks processed concurrently"
    )
    dequeue_timeout_seconds: int = Field(
        default=5,
        ge=1,
        le=60,
        description="Blocking pop timeout for the main queue"
    )


class NotifierConfig(BaseModel):
    """Sibling coordinator notification settings."""

    coordinator_url: str = Field(
        default="http://localhost:8000/functions/v1/rebalance-coordinator",
        description="Endpoint receiving completion and error notifications"
    )
    max_retries: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Attempts per notification"
    )
    retry_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="Delay between notification attempts"
    )
    timeout_seconds: float = Field(
        default=10.0,
        ge=1.0,
        le=120.0,
        description="HTTP timeout per notification attempt"
    )
    service_token: str = Field(
        default="",
        description="Bearer token sent to the coordinator, empty to omit"
    )


class BrokerConfig(BaseModel):
    """Brokerage data collaborator settings."""

    base_url: str = Field(
        default="http://localhost:8001",
        description="Base URL of the portfolio data service"
    )
    timeout_seconds: float = Field(
        default=30.0,
        ge=1.0,
        le=120.0,
        description="HTTP timeout for portfolio requests"
    )


class GenerationConfig(BaseModel):
    """Text-generation collaborator settings."""

    base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI-compatible API base URL"
    )
    model: str = Field(
        default="gpt-4o-mini",
        description="Model used when request settings do not name one"
    )
    timeout_seconds: float = Field(
        default=120.0,
        ge=1.0,
        le=600.0,
        description="HTTP timeout for a generation call"
    )
    temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=2.0,
        description="Sampling temperature"
    )


class RedisConfig(BaseModel):
    """Redis connection and key names."""

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, ge=1, le=65535, description="Redis port")
    db: int = Field(default=0, ge=0, le=15, description="Redis database index")
    queue_name: str = Field(default="rebalance_task_queue", description="Main task list")
    delayed_set_name: str = Field(default="rebalance_task_delayed", description="Delayed retry zset")
    active_set_name: str = Field(default="rebalance_task_active", description="Active task dedupe set")
    key_prefix: str = Field(default="rebalance", description="Prefix for record store keys")
    max_retries: int = Field(default=3, ge=1, le=10, description="Retries for transient Redis errors")

    @property
    def url(self) -> str:
        return f"redis://{self.host}:{self.port}/{self.db}"


class StoreConfig(BaseModel):
    """Record store backend selection."""

    backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Record store implementation"
    )


class ApiConfig(BaseModel):
    """HTTP entry point settings."""

    host: str = Field(default="0.0.0.0", description="Bind address for the API server")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port for the API server")
    enabled: bool = Field(default=True, description="Serve the HTTP API next to the worker")


class LoggingConfig(BaseModel):
    """Logging output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root log level"
    )
    format: Literal["json", "text"] = Field(
        default="text",
        description="Structured json lines or plain text"
    )

    @field_validator('level', mode='before')
    @classmethod
    def normalize_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v


class AppConfig(BaseModel):
    """Root configuration model."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
