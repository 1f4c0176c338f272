import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from rebalance_engine.cash_constraints import CashLedger, scale_to_cap
from rebalance_engine.models import (
    PlanSummary,
    Position,
    PositionSizing,
    RawOrder,
    RebalanceAction,
    RiskDecision,
    RiskIntent,
    TradeAction,
    map_intent_to_direction,
)

_PERCENT_NUMBER = re.compile(r"\d+(?:\.\d+)?")

TRIM_FALLBACK_FRACTION = 0.5
ADD_FALLBACK_FRACTION = 0.02


def round_to_increment(amount: float, increment: Optional[float]) -> float:
    """Round to the nearest multiple of the increment; sub-increment amounts round up to one increment"""
    if amount <= 0:
        return 0.0
    if not increment or increment <= 0:
        return amount
    if amount < increment:
        return float(increment)
    return float(round(amount / increment) * increment)


def parse_percent(text: Optional[str]) -> Optional[float]:
    """
    Convert a suggested slice like "10%" or "10-15%" to a decimal fraction.

    Ranges use the midpoint. Returns None when no number is present.
    """
    if not text:
        return None
    numbers = [float(value) for value in _PERCENT_NUMBER.findall(str(text))]
    if not numbers:
        return None
    if len(numbers) >= 2:
        percent = (numbers[0] + numbers[1]) / 2
    else:
        percent = numbers[0]
    return percent / 100.0 if percent > 0 else None


def derive_suggested_amount(intent: RiskIntent, fraction: Optional[float],
                            current_value: float, total_value: float) -> Optional[float]:
    """Dollar amount implied by a suggested percentage for the given intent"""
    if intent == RiskIntent.EXIT:
        return current_value if current_value > 0 else None
    if fraction is None:
        return None

    if intent in (RiskIntent.TRIM, RiskIntent.ADD):
        amount = current_value * fraction
    elif intent == RiskIntent.BUILD:
        amount = max(0.0, total_value * fraction - current_value)
    else:
        return None
    return amount if amount > 0 else None


@dataclass
class SynthesisContext:
    """Portfolio state and rules the synthesizer reconciles raw orders against"""
    total_value: float
    available_cash: float
    target_cash_percent: float
    sizing: PositionSizing
    positions: Dict[str, Position] = field(default_factory=dict)
    risk_decisions: Dict[str, RiskDecision] = field(default_factory=dict)
    prices: Dict[str, float] = field(default_factory=dict)
    blocked_tickers: Set[str] = field(default_factory=set)
    tickers: Optional[List[str]] = None
    current_cash: Optional[float] = None
    noise_floor_percent: float = 0.5
    default_price: float = 100.0

    @property
    def min_position_dollars(self) -> float:
        return self.sizing.min_position_dollars(self.total_value)


@dataclass
class SynthesisResult:
    actions: List[RebalanceAction]
    summary: PlanSummary
    initial_cap: float
    scaling_factor: float = 1.0


class OrderSynthesizer:
    """Merges raw orders with risk intents, position-size rules and the cash cap into final actions"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def synthesize(self, raw_orders: Iterable[RawOrder], context: SynthesisContext) -> SynthesisResult:
        """
        Produce exactly one action per considered ticker.

        Pending-order tickers are skipped. BUYs are bounded by the running
        deployable cap while processing and by the initial cap in the final
        reconciliation pass.
        """
        ledger = CashLedger(context.available_cash, context.total_value, context.target_cash_percent)
        min_dollars = context.min_position_dollars

        self.logger.info(f"Synthesizing orders: total ${context.total_value:,.2f}, "
                         f"available ${context.available_cash:,.2f}, target cash {context.target_cash_percent}% "
                         f"-> initial deployable cap ${ledger.initial_cap:,.2f}")
        self.logger.info(f"Min position ${min_dollars:,.2f} ({context.sizing.min_position_percent}%), "
                         f"increment {context.sizing.default_position_size or 'none'}")

        actions: List[RebalanceAction] = []
        for order in self._normalize_orders(raw_orders, context):
            actions.append(self._synthesize_one(order, context, ledger))

        scaling_factor = self._reconcile_buys(actions, ledger.initial_cap, context)
        summary = self._summarize(actions, context)

        self.logger.info(f"Synthesized {len(actions)} actions: {summary.buy_orders} BUY "
                         f"(${summary.total_buy_value:,.2f}), {summary.sell_orders} SELL "
                         f"(${summary.total_sell_value:,.2f}), "
                         f"{len(actions) - summary.total_trades} HOLD")

        return SynthesisResult(
            actions=actions,
            summary=summary,
            initial_cap=ledger.initial_cap,
            scaling_factor=scaling_factor,
        )

    def _normalize_orders(self, raw_orders: Iterable[RawOrder], context: SynthesisContext) -> List[RawOrder]:
        """One order per ticker, blocked tickers removed, HOLD added for considered tickers without one"""
        considered = list(context.tickers) if context.tickers is not None else None
        orders: Dict[str, RawOrder] = {}

        for order in raw_orders:
            ticker = order.ticker.upper()
            if ticker in context.blocked_tickers:
                self.logger.info(f"{ticker}: pending order exists - skipping")
                continue
            if considered is not None and ticker not in considered:
                self.logger.warning(f"{ticker}: not part of this rebalance - ignoring order")
                continue
            if ticker in orders:
                self.logger.warning(f"{ticker}: duplicate order ignored")
                continue
            orders[ticker] = order if order.ticker == ticker else order.model_copy(update={"ticker": ticker})

        for ticker in considered or []:
            if ticker not in orders and ticker not in context.blocked_tickers:
                orders[ticker] = RawOrder(ticker=ticker, action=TradeAction.HOLD)

        return list(orders.values())

    def _price_for(self, ticker: str, position: Optional[Position], context: SynthesisContext) -> float:
        price = context.prices.get(ticker)
        if price and price > 0:
            return price
        if position and position.current_price > 0:
            return position.current_price
        return context.default_price

    def _synthesize_one(self, order: RawOrder, context: SynthesisContext, ledger: CashLedger) -> RebalanceAction:
        ticker = order.ticker
        position = context.positions.get(ticker)
        current_value = position.market_value if position else 0.0
        current_shares = position.shares if position else 0.0
        price = self._price_for(ticker, position, context)
        total_value = context.total_value
        min_dollars = context.min_position_dollars
        increment = context.sizing.default_position_size
        notes: List[str] = []

        decision = context.risk_decisions.get(ticker)
        intent = decision.intent if decision else None
        if intent == RiskIntent.BUILD and (current_value > 0 or current_shares > 0):
            self.logger.debug(f"{ticker}: converting BUILD to ADD because a position exists")
            intent = RiskIntent.ADD
        risk_direction = map_intent_to_direction(intent) if decision else None

        suggested_amount = None
        if decision:
            suggested_amount = derive_suggested_amount(
                intent, parse_percent(decision.suggested_percent), current_value, total_value
            )

        action = order.action
        amount = order.dollar_amount or 0.0

        if decision:
            if intent == RiskIntent.EXIT:
                action, amount = TradeAction.SELL, current_value
            elif intent == RiskIntent.TRIM:
                action = TradeAction.SELL
                if suggested_amount is not None:
                    amount = suggested_amount
                elif amount <= 0:
                    amount = current_value * TRIM_FALLBACK_FRACTION
            elif intent == RiskIntent.ADD:
                action = TradeAction.BUY
                if suggested_amount is not None:
                    amount = suggested_amount
                elif amount <= 0:
                    amount = total_value * ADD_FALLBACK_FRACTION
            elif intent == RiskIntent.BUILD:
                action = TradeAction.BUY
                if suggested_amount is not None:
                    amount = suggested_amount
                elif amount <= 0:
                    amount = min_dollars
            else:
                action, amount = TradeAction.HOLD, 0.0

        if action == TradeAction.HOLD and 0 < current_value < min_dollars:
            shortfall = min_dollars - current_value
            tolerated = min_dollars * context.sizing.stop_loss_percent / 100.0
            if shortfall <= tolerated:
                self.logger.info(f"{ticker}: position ${current_value:,.2f} below minimum ${min_dollars:,.2f} "
                                 f"but within stop-loss range - keeping HOLD")
                notes.append("(below minimum but within stop-loss range)")
            else:
                self.logger.info(f"{ticker}: position ${current_value:,.2f} below minimum ${min_dollars:,.2f} "
                                 f"beyond stop-loss range - closing")
                action, amount = TradeAction.SELL, current_value
                notes.append("(below minimum position, closing)")

        if action == TradeAction.BUY:
            action, amount = self._apply_buy_rules(
                ticker, amount, current_value, min_dollars, increment, total_value, context, ledger, notes
            )
        elif action == TradeAction.SELL:
            action, amount = self._apply_sell_rules(
                ticker, amount, current_value, min_dollars, increment, ledger, notes
            )
        else:
            amount = 0.0

        if action == TradeAction.SELL and amount >= current_value:
            share_change = -current_shares
        elif action == TradeAction.BUY:
            share_change = math.trunc(amount / price * 100) / 100
        elif action == TradeAction.SELL:
            share_change = -(math.trunc(amount / price * 100) / 100)
        else:
            share_change = 0.0

        if action == TradeAction.BUY:
            target_value = current_value + amount
        elif action == TradeAction.SELL:
            target_value = max(0.0, current_value - amount)
        else:
            target_value = current_value

        if decision:
            reasoning = f"Risk intent {intent.value}"
            if decision.suggested_percent:
                reasoning += f" ({decision.suggested_percent})"
        elif action != order.action:
            reasoning = f"Changed from {order.action.value} to {action.value} due to portfolio constraints"
        else:
            reasoning = order.reasoning or f"Rebalancing {ticker} based on portfolio optimization"

        if action == TradeAction.HOLD and risk_direction in (TradeAction.BUY, TradeAction.SELL):
            notes.append("(blocked by portfolio constraints)")
        if notes:
            reasoning = " ".join([reasoning] + notes)

        return RebalanceAction(
            ticker=ticker,
            action=action,
            current_shares=current_shares,
            current_value=current_value,
            current_allocation=self._percent_of(current_value, total_value),
            current_price=price,
            target_shares=round(max(0.0, current_shares + share_change), 2),
            target_value=target_value,
            target_allocation=self._percent_of(target_value, total_value),
            share_change=share_change,
            dollar_amount=amount,
            confidence=decision.confidence if decision else order.confidence,
            reasoning=reasoning,
            risk_score=decision.risk_score if decision else 5.0,
            risk_intent=intent,
            risk_direction=risk_direction,
            suggested_percent=decision.suggested_percent if decision else None,
        )

    def _apply_buy_rules(self, ticker, amount, current_value, min_dollars, increment, total_value,
                         context: SynthesisContext, ledger: CashLedger, notes: List[str]):
        if increment:
            rounded = round_to_increment(amount, increment)
            if rounded != amount:
                self.logger.debug(f"{ticker}: rounded BUY ${amount:,.2f} -> ${rounded:,.2f}")
            amount = rounded

        resulting = current_value + amount
        if 0 < resulting < min_dollars:
            self.logger.info(f"{ticker}: BUY would leave position ${resulting:,.2f} below minimum "
                             f"${min_dollars:,.2f} - raising to minimum")
            amount = min_dollars - current_value
            notes.append("(raised to minimum position)")

        if amount <= 0:
            notes.append("(no amount to buy)")
            return TradeAction.HOLD, 0.0

        cap = ledger.current_cap()
        if amount > cap:
            self.logger.info(f"{ticker}: insufficient deployable cash, requested ${amount:,.2f}, allowed ${cap:,.2f}")
            if cap <= 0:
                notes.append("(deployable cash exhausted)")
                return TradeAction.HOLD, 0.0
            if cap < min_dollars and current_value == 0:
                notes.append("(deployable cash below minimum position)")
                return TradeAction.HOLD, 0.0
            if cap < total_value * context.noise_floor_percent / 100.0:
                notes.append("(deployable cash below noise floor)")
                return TradeAction.HOLD, 0.0

            amount = cap
            if current_value == 0 and amount < min_dollars:
                notes.append("(cannot reach minimum position)")
                return TradeAction.HOLD, 0.0
            notes.append("(limited by deployable cash)")

        ledger.apply_buy(amount)
        return TradeAction.BUY, amount

    def _apply_sell_rules(self, ticker, amount, current_value, min_dollars, increment,
                          ledger: CashLedger, notes: List[str]):
        if current_value <= 0:
            self.logger.warning(f"{ticker}: no position to sell - holding")
            notes.append("(no position to sell)")
            return TradeAction.HOLD, 0.0

        if increment:
            amount = round_to_increment(amount, increment)

        if amount <= 0:
            notes.append("(no amount to sell)")
            return TradeAction.HOLD, 0.0

        if amount > current_value:
            amount = current_value

        remaining = current_value - amount
        if 0 < remaining < min_dollars:
            self.logger.info(f"{ticker}: partial sell would leave ${remaining:,.2f} below minimum "
                             f"${min_dollars:,.2f} - selling entire position")
            amount = current_value
            notes.append("(full exit, remainder below minimum)")

        ledger.apply_sell(amount)
        return TradeAction.SELL, amount

    def _reconcile_buys(self, actions: List[RebalanceAction], initial_cap: float,
                        context: SynthesisContext) -> float:
        buys = [action for action in actions if action.action == TradeAction.BUY]
        scaling_factor, scaled = scale_to_cap([action.dollar_amount for action in buys], initial_cap)
        if scaling_factor >= 1.0:
            return 1.0

        min_dollars = context.min_position_dollars
        for action, amount in zip(buys, scaled):
            if amount <= 0:
                self.logger.info(f"{action.ticker}: BUY scaled to $0 - converting to HOLD")
                self._revert_to_hold(action, "(scaled to HOLD by cash cap)")
            elif amount < min_dollars and action.current_value == 0:
                self.logger.info(f"{action.ticker}: scaled BUY ${amount:,.2f} below minimum - converting to HOLD")
                self._revert_to_hold(action, "(scaled below minimum, holding)")
            else:
                share_change = math.trunc(amount / action.current_price * 100) / 100
                action.dollar_amount = amount
                action.share_change = share_change
                action.target_shares = round(action.current_shares + share_change, 2)
                action.target_value = action.current_value + amount
                action.target_allocation = self._percent_of(action.target_value, context.total_value)
                action.reasoning += f" (scaled by cash cap to ${amount:,.2f})"
        return scaling_factor

    @staticmethod
    def _revert_to_hold(action: RebalanceAction, note: str) -> None:
        action.action = TradeAction.HOLD
        action.dollar_amount = 0.0
        action.share_change = 0.0
        action.target_shares = action.current_shares
        action.target_value = action.current_value
        action.target_allocation = action.current_allocation
        action.reasoning += f" {note}"

    @staticmethod
    def _percent_of(value: float, total_value: float) -> float:
        return (value / total_value * 100.0) if total_value > 0 else 0.0

    @staticmethod
    def _summarize(actions: List[RebalanceAction], context: SynthesisContext) -> PlanSummary:
        buys = [action.dollar_amount for action in actions if action.action == TradeAction.BUY]
        sells = [abs(action.dollar_amount) for action in actions if action.action == TradeAction.SELL]
        current_cash = context.current_cash if context.current_cash is not None else context.available_cash
        return PlanSummary(
            total_trades=len(buys) + len(sells),
            buy_orders=len(buys),
            sell_orders=len(sells),
            total_buy_value=sum(buys),
            total_sell_value=sum(sells),
            expected_cash_after=current_cash + sum(sells) - sum(buys),
        )
