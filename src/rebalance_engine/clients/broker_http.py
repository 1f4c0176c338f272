import aiohttp
from typing import Any, Dict, Optional

from rebalance_engine.clients.base import BrokerClient
from rebalance_engine.exceptions import ApiKeyError, DataFetchError
from rebalance_engine.logger import AppLogger
from rebalance_engine.models import AccountState, PendingOrder, Position

app_logger = AppLogger(__name__)


def _first(record: Dict[str, Any], *keys, default=None):
    for key in keys:
        if record.get(key) is not None:
            return record[key]
    return default


class HttpBrokerClient(BrokerClient):
    """Fetches account state from the broker gateway over HTTP"""

    def __init__(self, base_url: str, timeout_seconds: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def get_account_state(self, user_id: str,
                                api_settings: Optional[Dict[str, Any]] = None) -> AccountState:
        url = f"{self.base_url}/accounts/{user_id}/state"
        headers = self._headers(api_settings or {})

        app_logger.log_debug(f"Retrieving account state from {url}")

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    url,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
                ) as response:
                    if response.status in (401, 403):
                        response_text = await response.text()
                        raise ApiKeyError(f"Broker rejected credentials (status {response.status}): {response_text}")

                    if response.status != 200:
                        response_text = await response.text()
                        raise DataFetchError(f"Broker API returned status {response.status}: {response_text}")

                    data = await response.json()

        except aiohttp.ClientError as e:
            app_logger.log_error(f"HTTP error fetching portfolio: {e}")
            raise DataFetchError(f"Failed to fetch portfolio from broker: {e}") from e

        if not isinstance(data, dict):
            raise DataFetchError("Broker response must be a JSON object")

        account = self.parse_account_state(data)
        app_logger.log_info(f"Retrieved {len(account.positions)} positions, cash ${account.cash:,.2f}, "
                            f"total ${account.portfolio_value:,.2f}")
        return account

    @staticmethod
    def _headers(api_settings: Dict[str, Any]) -> Dict[str, str]:
        headers = {}
        api_key = _first(api_settings, "broker_api_key", "alpaca_api_key", "brokerApiKey")
        secret = _first(api_settings, "broker_secret_key", "alpaca_secret_key", "brokerSecretKey")
        if api_key:
            headers["x-api-key"] = str(api_key)
        if secret:
            headers["x-api-secret"] = str(secret)
        if api_settings.get("paper_trading") is not None:
            headers["x-paper-trading"] = str(bool(api_settings["paper_trading"])).lower()
        return headers

    @staticmethod
    def parse_account_state(data: Dict[str, Any]) -> AccountState:
        """Normalize broker payload field names into an AccountState"""
        try:
            positions = []
            for item in data.get("positions") or []:
                shares = float(_first(item, "shares", "qty", default=0) or 0)
                price = float(_first(item, "currentPrice", "current_price", default=0) or 0)
                value = _first(item, "marketValue", "market_value", "value")
                positions.append(Position(
                    ticker=str(_first(item, "ticker", "symbol", default="")).upper(),
                    shares=shares,
                    avg_cost=float(_first(item, "avgCost", "avg_cost", "avg_entry_price", default=0) or 0),
                    current_price=price,
                    market_value=float(value) if value is not None else shares * price,
                ))

            open_orders = []
            for item in data.get("openOrders") or data.get("open_orders") or []:
                open_orders.append(PendingOrder(
                    ticker=str(_first(item, "ticker", "symbol", default="")).upper(),
                    side=str(item.get("side", "")).lower(),
                    qty=_first(item, "qty", "shares"),
                    notional=item.get("notional"),
                    limit_price=_first(item, "limitPrice", "limit_price"),
                ))

            cash = float(data.get("cash") or 0)
            stock_value = sum(position.market_value for position in positions)
            portfolio_value = _first(data, "portfolioValue", "portfolio_value", "totalValue")

            return AccountState(
                positions=positions,
                cash=cash,
                portfolio_value=float(portfolio_value) if portfolio_value is not None else cash + stock_value,
                reserved_capital=float(_first(data, "reservedCapital", "reserved_capital", default=0) or 0),
                open_orders=open_orders,
            )
        except (TypeError, ValueError) as e:
            raise DataFetchError(f"Invalid broker portfolio payload: {e}") from e
