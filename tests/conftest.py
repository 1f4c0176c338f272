"""
Pytest configuration and shared fixtures for rebalance engine tests.
"""
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, Mock

from rebalance_engine.config.models import EngineConfig, ExtractionConfig, SizingConfig
from rebalance_engine.models import (
    AccountState,
    AnalysisRecord,
    Position,
    PositionSizing,
    RebalanceRequest,
    RebalanceTask,
)
from rebalance_engine.store.memory import InMemoryRecordStore


@pytest.fixture
def store():
    """Fresh in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
def sizing():
    return PositionSizing(min_position_percent=5.0, max_position_percent=25.0, stop_loss_percent=10.0)


@pytest.fixture
def mock_notifier():
    """Notifier double; notify_async is fire-and-forget so it stays a plain Mock."""
    notifier = Mock()
    notifier.notify = AsyncMock(return_value=True)
    notifier.notify_async = Mock()
    notifier.drain = AsyncMock()
    return notifier


@pytest.fixture
def account_state():
    """$100k account: $50k cash and a $6k MSFT position."""
    return AccountState(
        cash=50_000.0,
        portfolio_value=100_000.0,
        positions=[
            Position(ticker="MSFT", shares=20, avg_cost=250.0, current_price=300.0, market_value=6_000.0),
        ],
    )


@pytest.fixture
def mock_broker(account_state):
    broker = Mock()
    broker.get_account_state = AsyncMock(return_value=account_state)
    return broker


@pytest.fixture
def mock_generation_client():
    """Generation client double; tests set generate.side_effect to script the provider."""
    client = Mock()
    client.for_settings.return_value = client
    client.generate = AsyncMock()
    return client


@pytest.fixture
def fast_extraction_config():
    return ExtractionConfig(retry_delay_seconds=0.0)


@pytest.fixture
def rebalance_task():
    return RebalanceTask(
        rebalance_request_id="rb-1",
        user_id="user-1",
        api_settings={"ai_api_key": "test-key"},
        tickers=["aapl", "msft"],
    )


@pytest_asyncio.fixture
async def seeded_store(store):
    await store.save_rebalance_request(RebalanceRequest(id="rb-1", user_id="user-1"))
    await store.save_analysis(AnalysisRecord(
        id="an-aapl", ticker="AAPL", decision="BUY", confidence=80.0,
        risk_score=4.0, rebalance_request_id="rb-1",
    ))
    await store.save_analysis(AnalysisRecord(
        id="an-msft", ticker="MSFT", decision="HOLD", confidence=60.0,
        risk_score=5.0, rebalance_request_id="rb-1",
    ))
    return store


@pytest.fixture
def engine_factory(mock_broker, mock_generation_client, mock_notifier, fast_extraction_config):
    """Build a RebalanceEngine around a given store with the shared doubles."""
    def _build(store):
        from rebalance_engine.engine import RebalanceEngine
        return RebalanceEngine(
            store=store,
            broker=mock_broker,
            generation_client=mock_generation_client,
            notifier=mock_notifier,
            engine_config=EngineConfig(),
            extraction_config=fast_extraction_config,
            sizing_defaults=SizingConfig(),
        )
    return _build
