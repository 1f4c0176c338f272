"""
Tests for broker payload normalization and per-request generation settings.
"""
import pytest

from rebalance_engine.clients.broker_http import HttpBrokerClient
from rebalance_engine.clients.generation_http import HttpTextGenerationClient
from rebalance_engine.exceptions import DataFetchError


def test_parse_account_state_normalizes_field_names():
    account = HttpBrokerClient.parse_account_state({
        "cash": "25000",
        "reservedCapital": 5_000,
        "positions": [
            {"symbol": "aapl", "qty": "10", "current_price": 200, "avg_entry_price": 150},
            {"ticker": "MSFT", "shares": 5, "currentPrice": 400, "marketValue": 2_100},
        ],
        "open_orders": [{"symbol": "tsla", "side": "BUY", "qty": 3}],
    })

    aapl, msft = account.positions
    assert aapl.ticker == "AAPL"
    assert aapl.market_value == 2_000
    assert aapl.avg_cost == 150
    assert msft.market_value == 2_100
    assert account.portfolio_value == 25_000 + 2_000 + 2_100
    assert account.available_cash == 20_000
    assert account.open_orders[0].ticker == "TSLA"
    assert account.open_orders[0].side == "buy"


def test_parse_account_state_prefers_reported_total():
    account = HttpBrokerClient.parse_account_state({"cash": 1_000, "portfolioValue": 50_000})

    assert account.portfolio_value == 50_000


def test_parse_account_state_rejects_bad_numbers():
    with pytest.raises(DataFetchError):
        HttpBrokerClient.parse_account_state({"cash": "lots"})


def test_broker_headers_from_api_settings():
    headers = HttpBrokerClient._headers({"alpaca_api_key": "k", "alpaca_secret_key": "s", "paper_trading": True})

    assert headers == {"x-api-key": "k", "x-api-secret": "s", "x-paper-trading": "true"}


def test_generation_client_for_settings_overrides_model_and_key():
    base = HttpTextGenerationClient("https://api.example.com/v1/", "base-model", api_key="default")

    scoped = base.for_settings({"ai_model": "other-model", "ai_api_key": "user-key"})

    assert scoped is not base
    assert scoped.base_url == "https://api.example.com/v1"
    assert scoped.model == "other-model"
    assert scoped.api_key == "user-key"
    assert base.api_key == "default"


def test_generation_client_for_empty_settings_keeps_defaults():
    base = HttpTextGenerationClient("https://api.example.com/v1", "base-model", api_key="default")

    scoped = base.for_settings(None)

    assert scoped.model == "base-model"
    assert scoped.api_key == "default"
