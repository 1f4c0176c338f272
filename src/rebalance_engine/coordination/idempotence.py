"""
Resumption of a run whose trade orders were already created by an earlier attempt.
"""
from typing import Iterable, List

from rebalance_engine.logger import AppLogger
from rebalance_engine.models import RawOrder, TradeAction, TradeOrder
from rebalance_engine.store.base import RecordStore

app_logger = AppLogger(__name__)


def _amount_of(order) -> float:
    if order.dollar_amount > 0:
        return order.dollar_amount
    # share-based closes carry no dollar amount
    return getattr(order, "before_value", 0.0)


def reconstruct_decision_text(orders: Iterable[TradeOrder], tickers: Iterable[str]) -> str:
    """
    Render existing orders in the numbered decision format, sorted by ticker,
    with HOLD lines for tickers that have no order.
    """
    by_ticker = {order.ticker: order for order in orders}
    all_tickers = sorted(set(tickers) | set(by_ticker))

    lines = []
    for number, ticker in enumerate(all_tickers, start=1):
        order = by_ticker.get(ticker)
        if order is None or order.action == TradeAction.HOLD:
            lines.append(f"{number}. HOLD {ticker}")
        else:
            lines.append(f"{number}. {order.action.value} ${round(_amount_of(order)):,} worth {ticker}")
    return "\n".join(lines)


def orders_to_raw(orders: Iterable[TradeOrder], tickers: Iterable[str]) -> List[RawOrder]:
    by_ticker = {order.ticker: order for order in orders}
    raw = []
    for ticker in sorted(set(tickers) | set(by_ticker)):
        order = by_ticker.get(ticker)
        if order is None:
            raw.append(RawOrder(ticker=ticker, action=TradeAction.HOLD))
        else:
            raw.append(RawOrder(
                ticker=ticker,
                action=order.action,
                dollar_amount=_amount_of(order),
                shares=order.shares,
                confidence=order.confidence,
                reasoning=order.reasoning,
            ))
    return raw


class ResumptionPlanner:
    """Finds the trade orders an earlier attempt already created for a request"""

    def __init__(self, store: RecordStore):
        self.store = store

    async def find_existing(self, rebalance_request_id: str) -> List[TradeOrder]:
        orders = await self.store.list_trade_orders(rebalance_request_id)
        if orders:
            app_logger.log_info(f"Found {len(orders)} existing trade orders - resuming without new orders")
        return orders
