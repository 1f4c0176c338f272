"""Target percentage allocation per ticker from risk intents, confidence and risk profile."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

from rebalance_engine.models import RiskDecision, RiskIntent, TradeAction

logger = logging.getLogger(__name__)

# Fixed per-stock bounds; not affected by risk profile
MIN_PER_STOCK_PERCENT = 5.0
MAX_PER_STOCK_PERCENT = 25.0

DEFAULT_CONFIDENCE = 70.0
DEFAULT_RISK_SCORE = 5.0

CONSERVATIVE_HIGH_RISK_SCORE = 8.0
CONSERVATIVE_HIGH_RISK_MULTIPLIER = 0.8
AGGRESSIVE_HIGH_CONFIDENCE = 75.0
AGGRESSIVE_HIGH_CONFIDENCE_MULTIPLIER = 1.1

HOLD_CAP_PERCENT = {"conservative": 8.0, "moderate": 10.0, "aggressive": 12.0}
UNANALYZED_CAP_PERCENT = {"conservative": 3.0, "moderate": 5.0, "aggressive": 7.0}

RISK_PROFILES = ("conservative", "moderate", "aggressive")


@dataclass
class AllocationPlan:
    """Target allocation percentages; stock allocations and cash sum to 100"""
    allocations: Dict[str, float]
    cash_allocation: float
    target_cash_percent: float
    risk_profile: str
    buckets: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def stock_allocation(self) -> float:
        return sum(self.allocations.values())

    def recommended_positions(self, total_value: float) -> List[dict]:
        """Target value per ticker, in bucket order"""
        directions = {}
        for bucket, tickers in self.buckets.items():
            for ticker in tickers:
                directions[ticker] = bucket
        return [
            {
                "ticker": ticker,
                "targetPercent": round(percent, 4),
                "targetValue": round(total_value * percent / 100.0, 2),
                "direction": directions.get(ticker, "unanalyzed"),
            }
            for ticker, percent in self.allocations.items()
        ]


def normalize_risk_profile(risk_profile: Optional[str]) -> str:
    profile = (risk_profile or "moderate").strip().lower()
    return profile if profile in RISK_PROFILES else "moderate"


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def calculate_target_allocations(
    tickers: Iterable[str],
    risk_decisions: Mapping[str, RiskDecision],
    target_cash_percent: float,
    risk_profile: Optional[str] = "moderate",
    held_tickers: Iterable[str] = (),
) -> AllocationPlan:
    """
    Compute a target percentage per ticker.

    Tickers considered are the union of the given tickers and the held tickers.
    BUY-direction tickers share the stock budget by confidence, clamped to
    [5%, 25%]; TRIM keeps the minimum, EXIT goes to zero; HOLD and unanalyzed
    tickers receive a small risk-profile dependent share of what remains.
    Leftover budget is spread pro-rata across BUY tickers, re-clamped at 25%.
    """
    profile = normalize_risk_profile(risk_profile)
    target_cash_percent = _clamp(float(target_cash_percent or 0.0), 0.0, 100.0)
    stock_budget = 100.0 - target_cash_percent

    considered: List[str] = []
    for ticker in list(tickers) + list(held_tickers):
        if ticker not in considered:
            considered.append(ticker)

    buy_bucket: List[str] = []
    sell_bucket: List[str] = []
    hold_bucket: List[str] = []
    unanalyzed_bucket: List[str] = []

    for ticker in considered:
        decision = risk_decisions.get(ticker)
        if decision is None:
            unanalyzed_bucket.append(ticker)
        elif decision.direction == TradeAction.BUY:
            buy_bucket.append(ticker)
        elif decision.direction == TradeAction.SELL:
            sell_bucket.append(ticker)
        else:
            hold_bucket.append(ticker)

    logger.info(f"Calculating allocations for {len(considered)} tickers "
                f"(budget {stock_budget:.2f}%, profile {profile})")
    logger.debug(f"  BUY: {buy_bucket or 'none'} SELL: {sell_bucket or 'none'} "
                 f"HOLD: {hold_bucket or 'none'} unanalyzed: {unanalyzed_bucket or 'none'}")

    allocations: Dict[str, float] = {}
    remaining = stock_budget

    if buy_bucket:
        total_confidence = sum(
            risk_decisions[ticker].confidence or DEFAULT_CONFIDENCE for ticker in buy_bucket
        )
        for ticker in buy_bucket:
            decision = risk_decisions[ticker]
            confidence = decision.confidence or DEFAULT_CONFIDENCE
            risk_score = decision.risk_score or DEFAULT_RISK_SCORE

            base = (confidence / total_confidence) * stock_budget if total_confidence > 0 else 0.0
            if profile == "conservative" and risk_score > CONSERVATIVE_HIGH_RISK_SCORE:
                base *= CONSERVATIVE_HIGH_RISK_MULTIPLIER
            elif profile == "aggressive" and confidence > AGGRESSIVE_HIGH_CONFIDENCE:
                base *= AGGRESSIVE_HIGH_CONFIDENCE_MULTIPLIER

            allocations[ticker] = _clamp(base, MIN_PER_STOCK_PERCENT, MAX_PER_STOCK_PERCENT)
            remaining -= allocations[ticker]

    for ticker in sell_bucket:
        trimmed = risk_decisions[ticker].intent == RiskIntent.TRIM
        allocations[ticker] = MIN_PER_STOCK_PERCENT if trimmed else 0.0
        remaining -= allocations[ticker]

    for bucket, caps in ((hold_bucket, HOLD_CAP_PERCENT), (unanalyzed_bucket, UNANALYZED_CAP_PERCENT)):
        if not bucket:
            continue
        share = min(caps[profile], remaining / len(bucket)) if remaining > 0 else 0.0
        for ticker in bucket:
            allocations[ticker] = share
            remaining -= share

    if remaining > 0 and buy_bucket:
        buy_total = sum(allocations[ticker] for ticker in buy_bucket)
        for ticker in buy_bucket:
            weight = allocations[ticker] / buy_total if buy_total > 0 else 1.0 / len(buy_bucket)
            extra = remaining * weight
            allocations[ticker] = min(MAX_PER_STOCK_PERCENT, allocations[ticker] + extra)

    cash_allocation = max(0.0, 100.0 - sum(allocations.values()))

    for ticker, percent in allocations.items():
        logger.debug(f"  {ticker}: {percent:.2f}%")
    logger.info(f"Allocated {sum(allocations.values()):.2f}% to stocks, {cash_allocation:.2f}% to cash")

    return AllocationPlan(
        allocations=allocations,
        cash_allocation=cash_allocation,
        target_cash_percent=target_cash_percent,
        risk_profile=profile,
        buckets={
            "buy": buy_bucket,
            "sell": sell_bucket,
            "hold": hold_bucket,
            "unanalyzed": unanalyzed_bucket,
        },
    )
