"""
Portfolio-level helpers around a rebalance run: risk-decision assembly,
pending-order filtering, persisted snapshot shapes and trade-order creation.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from rebalance_engine.config.models import SizingConfig
from rebalance_engine.models import (
    AccountState,
    AnalysisRecord,
    PendingOrder,
    Position,
    PositionSizing,
    RebalanceAction,
    RebalanceConstraints,
    RiskDecision,
    TradeAction,
    TradeOrder,
)

logger = logging.getLogger(__name__)

FULL_CLOSE_THRESHOLD = 0.05

CONSERVATIVE_CONFIDENCE_FACTOR = 0.95
AGGRESSIVE_CONFIDENCE_FACTOR = 1.05


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


def resolve_sizing(constraints: Optional[RebalanceConstraints], api_settings: Optional[Mapping[str, Any]],
                   defaults: Optional[SizingConfig] = None) -> PositionSizing:
    """Per-request constraints win over the user's saved settings, which win over config defaults"""
    constraints = constraints or RebalanceConstraints()
    api_settings = api_settings or {}
    defaults = defaults or SizingConfig()

    min_percent = _first_set(constraints.min_position_size, api_settings.get("rebalance_min_position_size"),
                             defaults.min_position_percent)
    max_percent = _first_set(constraints.max_position_size, api_settings.get("rebalance_max_position_size"),
                             defaults.max_position_percent)
    if max_percent < min_percent:
        logger.warning(f"Max position {max_percent}% below min {min_percent}%, using min for both")
        max_percent = min_percent

    return PositionSizing(
        min_position_percent=min_percent,
        max_position_percent=max_percent,
        default_position_size=_first_set(constraints.default_position_size,
                                         api_settings.get("default_position_size_dollars")),
        stop_loss_percent=_first_set(constraints.stop_loss, api_settings.get("stop_loss"),
                                     defaults.stop_loss_percent),
        profit_target_percent=_first_set(constraints.profit_target, api_settings.get("profit_target"),
                                         defaults.profit_target_percent),
    )


def resolve_risk_profile(constraints: Optional[RebalanceConstraints], api_settings: Optional[Mapping[str, Any]],
                         default: str = "moderate") -> str:
    profile = (constraints.risk_profile if constraints else None) or (api_settings or {}).get("user_risk_level")
    return (profile or default).lower()


def build_risk_decisions(analyses: Iterable[AnalysisRecord]) -> Dict[str, RiskDecision]:
    """
    One risk decision per analyzed ticker.

    Failed analyses are skipped so their tickers are treated as unanalyzed.
    The risk manager's final assessment wins over the analysis verdict.
    """
    decisions: Dict[str, RiskDecision] = {}

    for analysis in analyses:
        if analysis.is_failed:
            logger.warning(f"Skipping failed analysis for {analysis.ticker} in risk decisions")
            continue

        insights = analysis.agent_insights.get("riskManager") or {}
        final_assessment = insights.get("finalAssessment") or {} if isinstance(insights, dict) else {}
        execution_plan = final_assessment.get("executionPlan") or {}

        decisions[analysis.ticker] = RiskDecision(
            ticker=analysis.ticker,
            intent=final_assessment.get("intent") or analysis.decision or "HOLD",
            confidence=analysis.confidence,
            risk_score=_first_set(final_assessment.get("overallRiskScore"), analysis.risk_score),
            execution_plan=execution_plan,
            reasoning=final_assessment.get("summary") or final_assessment.get("reasoning"),
        )

    return decisions


def adjust_confidences_for_risk_level(decisions: Mapping[str, RiskDecision],
                                      risk_profile: str) -> Dict[str, RiskDecision]:
    """Risk level shifts how confidence is read; allocation bounds stay unchanged"""
    if risk_profile == "conservative":
        factor = CONSERVATIVE_CONFIDENCE_FACTOR
    elif risk_profile == "aggressive":
        factor = AGGRESSIVE_CONFIDENCE_FACTOR
    else:
        return dict(decisions)

    logger.info(f"Applying risk level adjustment: {risk_profile}")
    adjusted = {}
    for ticker, decision in decisions.items():
        confidence = max(0.0, min(100.0, float(round(decision.confidence * factor))))
        if confidence != decision.confidence:
            logger.debug(f"  {ticker}: confidence {decision.confidence}% -> {confidence}%")
        adjusted[ticker] = decision.model_copy(update={"confidence": confidence})
    return adjusted


def filter_tickers_by_pending_orders(tickers: Iterable[str],
                                     open_orders: Iterable[PendingOrder]) -> Tuple[List[str], List[str], Set[str]]:
    """
    Returns:
        (allowed tickers, blocked tickers, every ticker with a pending order)
    """
    pending = {order.ticker for order in open_orders}
    tickers = list(tickers)
    allowed = [ticker for ticker in tickers if ticker not in pending]
    blocked = [ticker for ticker in tickers if ticker in pending]

    logger.info(f"Allowed tickers (no pending orders): {', '.join(allowed) or 'none'}")
    logger.info(f"Blocked tickers (have pending orders): {', '.join(blocked) or 'none'}")
    return allowed, blocked, pending


def build_portfolio_snapshot(account: AccountState, total_value: Optional[float] = None) -> Dict[str, Any]:
    total_value = total_value if total_value is not None else account.portfolio_value
    stock_value = sum(position.market_value for position in account.positions)
    return {
        "cash": account.cash,
        "positions": [
            {
                "ticker": position.ticker,
                "shares": position.shares,
                "avgCost": position.avg_cost,
                "currentPrice": position.current_price,
                "value": position.market_value,
            }
            for position in account.positions
        ],
        "totalValue": total_value,
        "stockValue": stock_value,
        "currentStockAllocation": (stock_value / total_value * 100) if total_value > 0 else 0.0,
        "currentCashAllocation": (account.cash / total_value * 100) if total_value > 0 else 0.0,
    }


def build_recommended_positions(actions: Iterable[RebalanceAction]) -> List[Dict[str, Any]]:
    return [
        {
            "ticker": action.ticker,
            "currentShares": action.current_shares,
            "currentValue": action.current_value,
            "currentAllocation": action.current_allocation,
            "targetAllocation": action.target_allocation,
            "recommendedShares": action.target_shares,
            "shareChange": action.share_change,
            "action": action.action.value,
            "reasoning": action.reasoning,
            "executed": False,
        }
        for action in actions
    ]


def should_close_full_position(sell_amount: float, position_value: float,
                               threshold: float = FULL_CLOSE_THRESHOLD) -> bool:
    """A sell within the threshold of the whole position is treated as a close"""
    if position_value <= 0 or sell_amount <= 0:
        return False
    return abs(sell_amount - position_value) / position_value <= threshold


def create_trade_orders_from_actions(actions: Iterable[RebalanceAction], rebalance_request_id: str,
                                     blocked_tickers: Set[str],
                                     positions: Mapping[str, Position]) -> List[TradeOrder]:
    """
    Turn final actions into executable orders.

    HOLD and zero actions produce nothing. Tickers with pending orders are
    skipped again as a last guard. SELLs at or near the full position value
    close the position by share count instead of by dollars.
    """
    actions = list(actions)
    orders: List[TradeOrder] = []

    logger.info(f"Creating trade orders from {len(actions)} actions "
                f"({sum(1 for a in actions if a.action == TradeAction.BUY)} BUY, "
                f"{sum(1 for a in actions if a.action == TradeAction.SELL)} SELL)")

    for action in actions:
        if action.ticker in blocked_tickers:
            logger.warning(f"{action.ticker} has pending orders - blocking order creation")
            continue
        if action.action == TradeAction.HOLD or (action.share_change == 0 and action.dollar_amount <= 0):
            continue

        order = TradeOrder(
            ticker=action.ticker,
            action=action.action,
            dollar_amount=abs(action.dollar_amount),
            confidence=action.confidence,
            reasoning=f"{action.reasoning}. Risk-adjusted based on "
                      f"{action.risk_intent.value if action.risk_intent else 'analysis'} recommendation.",
            rebalance_request_id=rebalance_request_id,
            before_shares=action.current_shares,
            before_value=action.current_value,
            before_allocation=action.current_allocation,
            after_shares=action.target_shares,
            after_value=action.target_value,
            after_allocation=action.target_allocation,
            share_change=action.share_change,
        )

        if action.action == TradeAction.SELL:
            position = positions.get(action.ticker)
            if position is None or position.shares <= 0 or position.market_value <= 0:
                logger.warning(f"No position found for {action.ticker} - cannot execute SELL order")
                continue

            sell_amount = abs(action.dollar_amount)
            if sell_amount > position.market_value or should_close_full_position(sell_amount, position.market_value):
                order.shares = position.shares
                order.dollar_amount = 0.0
                order.close_position = True
                order.reasoning += f" Closing full position ({position.shares} shares)."
                logger.info(f"  {action.ticker}: share-based close ({position.shares} shares)")
            else:
                logger.info(f"  {action.ticker}: dollar-based SELL (${order.dollar_amount:,.2f})")
        else:
            logger.info(f"  {action.ticker}: dollar-based BUY (${order.dollar_amount:,.2f})")

        orders.append(order)

    return orders


def trade_order_summary(order: TradeOrder) -> Dict[str, Any]:
    """Shape of a trade order inside the persisted plan"""
    return {
        "id": order.id,
        "ticker": order.ticker,
        "action": order.action.value,
        "confidence": order.confidence,
        "shares": order.shares,
        "dollarAmount": order.dollar_amount,
        "closePosition": order.close_position,
        "rebalanceRequestId": order.rebalance_request_id,
        "beforePosition": {
            "shares": order.before_shares,
            "value": order.before_value,
            "allocation": order.before_allocation,
        },
        "afterPosition": {
            "shares": order.after_shares,
            "value": order.after_value,
            "allocation": order.after_allocation,
        },
        "changes": {
            "shares": order.share_change,
            "value": order.after_value - order.before_value,
            "allocation": order.after_allocation - order.before_allocation,
        },
        "reasoning": order.reasoning,
    }
