from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for records exchanged with the coordinator and record store (camelCase on the wire)"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# Status enums
class RebalanceStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({RebalanceStatus.COMPLETED, RebalanceStatus.CANCELLED, RebalanceStatus.ERROR})


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class WorkflowStepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class RiskIntent(str, Enum):
    BUILD = "BUILD"
    ADD = "ADD"
    TRIM = "TRIM"
    EXIT = "EXIT"
    HOLD = "HOLD"

    @classmethod
    def parse(cls, value: Any) -> "RiskIntent":
        """Normalize an upstream intent string; plain BUY/SELL verdicts map to BUILD/TRIM."""
        if isinstance(value, RiskIntent):
            return value
        text = str(value or "").strip().upper()
        if text in cls.__members__:
            return cls[text]
        if text == "BUY":
            return cls.BUILD
        if text == "SELL":
            return cls.TRIM
        return cls.HOLD


class TradeAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


def map_intent_to_direction(intent: Optional[RiskIntent]) -> TradeAction:
    if intent in (RiskIntent.BUILD, RiskIntent.ADD):
        return TradeAction.BUY
    if intent in (RiskIntent.TRIM, RiskIntent.EXIT):
        return TradeAction.SELL
    return TradeAction.HOLD


# Settings
class PositionSizing(BaseModel):
    """Position-size rules resolved from user settings and config defaults"""
    min_position_percent: float = Field(default=5.0, ge=0.0, le=100.0)
    max_position_percent: float = Field(default=25.0, ge=0.0, le=100.0)
    default_position_size: Optional[float] = Field(default=None, ge=0.0)
    stop_loss_percent: float = Field(default=10.0, ge=0.0, le=100.0)
    profit_target_percent: float = Field(default=25.0, ge=0.0)

    def min_position_dollars(self, total_value: float) -> float:
        return (self.min_position_percent / 100.0) * total_value

    def max_position_dollars(self, total_value: float) -> float:
        return (self.max_position_percent / 100.0) * total_value


class RebalanceConstraints(WireModel):
    """Per-request overrides supplied by the trigger"""
    target_cash_allocation: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    min_position_size: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    max_position_size: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    default_position_size: Optional[float] = Field(default=None, ge=0.0)
    stop_loss: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    profit_target: Optional[float] = Field(default=None, ge=0.0)
    near_limit_threshold: Optional[float] = Field(default=None, ge=0.0)
    near_position_threshold: Optional[float] = Field(default=None, ge=0.0)
    risk_profile: Optional[str] = None
    skip_threshold_check: bool = False


# Records
class WorkflowStep(WireModel):
    status: WorkflowStepStatus = WorkflowStepStatus.PENDING
    data: Dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utcnow)


class RebalanceRequest(WireModel):
    """A single rebalance run tracked in the record store"""
    id: str
    user_id: str
    status: RebalanceStatus = RebalanceStatus.PENDING
    target_cash_allocation: Optional[float] = None
    constraints: RebalanceConstraints = Field(default_factory=RebalanceConstraints)
    rebalance_plan: Optional[Dict[str, Any]] = None
    portfolio_snapshot: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    workflow_steps: Dict[str, WorkflowStep] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AnalysisRecord(WireModel):
    """Upstream per-ticker analysis, optionally nested under a rebalance"""
    id: str
    ticker: str
    decision: Optional[str] = None
    confidence: Optional[float] = None
    risk_score: Optional[float] = None
    rebalance_request_id: Optional[str] = None
    status: AnalysisStatus = AnalysisStatus.COMPLETED
    agent_insights: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_failed(self) -> bool:
        return self.status == AnalysisStatus.ERROR or (self.decision or "").upper() == "ERROR"

    @property
    def current_price(self) -> Optional[float]:
        try:
            price = self.agent_insights["marketAnalyst"]["data"]["price"]["current"]
        except (KeyError, TypeError):
            return None
        return float(price) if price else None


class RiskDecision(WireModel):
    """Risk-manager verdict for one ticker"""
    ticker: str = ""
    intent: RiskIntent = RiskIntent.HOLD
    confidence: float = 70.0
    risk_score: float = 5.0
    suggested_percent: Optional[str] = None
    execution_plan: Dict[str, Any] = Field(default_factory=dict)
    reasoning: Optional[str] = None

    @model_validator(mode='before')
    @classmethod
    def accept_legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if 'intent' not in data and 'decision' in data:
            data['intent'] = data['decision']
        plan = data.get('executionPlan') or data.get('execution_plan') or {}
        if not data.get('suggestedPercent') and not data.get('suggested_percent') and isinstance(plan, dict):
            if plan.get('suggestedPercent'):
                data['suggestedPercent'] = plan['suggestedPercent']
        for key in ('confidence', 'riskScore', 'risk_score'):
            if key in data and data[key] is None:
                del data[key]
        return data

    @field_validator('intent', mode='before')
    @classmethod
    def normalize_intent(cls, v):
        return RiskIntent.parse(v)

    @field_validator('confidence')
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return max(0.0, min(100.0, v))

    @field_validator('risk_score')
    @classmethod
    def clamp_risk_score(cls, v: float) -> float:
        return max(0.0, min(10.0, v))

    @field_validator('suggested_percent', mode='before')
    @classmethod
    def blank_percent_is_none(cls, v):
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @property
    def direction(self) -> TradeAction:
        return map_intent_to_direction(self.intent)


class Position(WireModel):
    ticker: str
    shares: float = 0.0
    avg_cost: float = 0.0
    current_price: float = 0.0
    market_value: float = 0.0


class PendingOrder(WireModel):
    ticker: str
    side: str
    qty: Optional[float] = None
    notional: Optional[float] = None
    limit_price: Optional[float] = None


class AccountState(WireModel):
    """Broker snapshot consumed by a rebalance run"""
    positions: List[Position] = Field(default_factory=list)
    cash: float = 0.0
    portfolio_value: float = 0.0
    reserved_capital: float = 0.0
    open_orders: List[PendingOrder] = Field(default_factory=list)

    @property
    def available_cash(self) -> float:
        return max(0.0, self.cash - self.reserved_capital)


class RawOrder(WireModel):
    """Order extracted from generation output or derived from a risk decision, before synthesis"""
    ticker: str
    action: TradeAction = TradeAction.HOLD
    dollar_amount: float = 0.0
    shares: float = 0.0
    confidence: float = 70.0
    reasoning: Optional[str] = None


class RebalanceAction(WireModel):
    """Final reconciled action for one ticker"""
    ticker: str
    action: TradeAction
    current_shares: float = 0.0
    current_value: float = 0.0
    current_allocation: float = 0.0
    current_price: float = 0.0
    target_shares: float = 0.0
    target_value: float = 0.0
    target_allocation: float = 0.0
    share_change: float = 0.0
    dollar_amount: float = 0.0
    confidence: float = 70.0
    reasoning: str = ""
    risk_score: float = 5.0
    risk_intent: Optional[RiskIntent] = None
    risk_direction: Optional[TradeAction] = None
    suggested_percent: Optional[str] = None


class TradeOrder(WireModel):
    """Order persisted for execution; at most one per ticker per rebalance"""
    id: Optional[str] = None
    ticker: str
    action: TradeAction
    dollar_amount: float = 0.0
    shares: float = 0.0
    before_shares: float = 0.0
    before_value: float = 0.0
    before_allocation: float = 0.0
    after_shares: float = 0.0
    after_value: float = 0.0
    after_allocation: float = 0.0
    share_change: float = 0.0
    confidence: float = 70.0
    reasoning: str = ""
    rebalance_request_id: str
    close_position: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class PlanSummary(WireModel):
    total_trades: int = 0
    buy_orders: int = 0
    sell_orders: int = 0
    total_buy_value: float = 0.0
    total_sell_value: float = 0.0
    expected_cash_after: float = 0.0


class RebalanceTask(WireModel):
    """Trigger payload for one rebalance run; carried through the durable queue"""
    rebalance_request_id: str
    user_id: str
    api_settings: Dict[str, Any] = Field(default_factory=dict)
    tickers: List[str] = Field(default_factory=list)
    risk_manager_decisions: Optional[Dict[str, Dict[str, Any]]] = None
    constraints: Optional[RebalanceConstraints] = None
    attempt: int = Field(default=1, ge=1)
    enqueued_at: datetime = Field(default_factory=utcnow)

    @field_validator('tickers', mode='before')
    @classmethod
    def normalize_tickers(cls, v):
        if not v:
            return []
        return [str(ticker).strip().upper() for ticker in v if str(ticker).strip()]
