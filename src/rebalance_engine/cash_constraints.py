"""Deployable cash cap and the running cash ledger used while orders are applied."""

import logging
import math
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


def _finite_or_zero(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value) or value < 0:
        return 0.0
    return value


def calculate_deployable_cap(available_cash: float, total_value: float, target_cash_percent: float) -> float:
    """
    Portion of available cash that can fund BUY orders without breaching the cash floor.

    Args:
        available_cash: Raw cash available to spend
        total_value: Total portfolio value (positions + cash)
        target_cash_percent: Cash floor as a percentage of total value (20 means 20%)

    Returns:
        max(0, available_cash - target_cash_percent% x total_value)
    """
    available_cash = _finite_or_zero(available_cash)
    total_value = _finite_or_zero(total_value)
    target_cash_percent = min(100.0, _finite_or_zero(target_cash_percent))

    cash_floor = (target_cash_percent / 100.0) * total_value
    return max(0.0, available_cash - cash_floor)


class CashLedger:
    """Tracks raw cash and deployable cap as BUY and SELL actions are applied in sequence"""

    def __init__(self, available_cash: float, total_value: float, target_cash_percent: float):
        self.total_value = _finite_or_zero(total_value)
        self.target_cash_percent = min(100.0, _finite_or_zero(target_cash_percent))
        self.remaining_raw_cash = _finite_or_zero(available_cash)
        self.allocated = 0.0
        self.initial_cap = calculate_deployable_cap(
            self.remaining_raw_cash, self.total_value, self.target_cash_percent
        )

    def current_cap(self) -> float:
        """Deployable cash still available for the next BUY"""
        dynamic_cap = calculate_deployable_cap(
            self.remaining_raw_cash, self.total_value, self.target_cash_percent
        )
        remaining_deployable = max(0.0, dynamic_cap - self.allocated)
        return max(0.0, min(remaining_deployable, self.remaining_raw_cash))

    def apply_buy(self, amount: float) -> None:
        amount = _finite_or_zero(amount)
        self.allocated += amount
        self.remaining_raw_cash = max(0.0, self.remaining_raw_cash - amount)

    def apply_sell(self, amount: float) -> None:
        # Sale proceeds replenish raw cash, which can lift the cap for later BUYs
        self.remaining_raw_cash += _finite_or_zero(amount)

    def __repr__(self) -> str:
        return (f"CashLedger(initial_cap={self.initial_cap:.2f}, "
                f"remaining_raw_cash={self.remaining_raw_cash:.2f}, allocated={self.allocated:.2f})")


def scale_to_cap(amounts: List[float], cap: float) -> Tuple[float, List[float]]:
    """
    Scale BUY amounts proportionally so their sum fits within the cap.

    Returns:
        (scaling_factor, scaled_amounts); factor is 1.0 when no scaling is needed.
        Scaled amounts are rounded to cents.
    """
    total = sum(amounts)
    cap = _finite_or_zero(cap)

    if total <= 0 or total <= cap:
        return 1.0, list(amounts)

    scaling_factor = cap / total
    logger.info(f"Scaling BUY orders to deployable cash cap: ${total:,.2f} -> ${cap:,.2f} "
                f"(factor {scaling_factor:.4f})")

    scaled = [max(0.0, math.floor(amount * scaling_factor * 100) / 100) for amount in amounts]
    return scaling_factor, scaled
