"""
Tests for the bounded generation retry used by the decision and extraction calls.
"""
import pytest
from unittest.mock import AsyncMock, Mock

from rebalance_engine.config.models import ExtractionConfig
from rebalance_engine.exceptions import (
    ErrorType,
    ExtractionError,
    ProviderError,
    RateLimitError,
)
from rebalance_engine.extraction.extractor import DecisionExtractor
from rebalance_engine.models import TradeAction

pytestmark = pytest.mark.asyncio

VALID_PAYLOAD = '{"orders": [{"ticker": "AAPL", "action": "BUY", "dollarAmount": 5000}]}'
TRUNCATED_PAYLOAD = '{"orders": [{"ticker": "AAPL", "action": "BUY", "dollarAmount": '


def _extractor(*responses, **config):
    client = Mock()
    client.generate = AsyncMock(side_effect=list(responses))
    settings = {"retry_delay_seconds": 0.0}
    settings.update(config)
    return DecisionExtractor(client, ExtractionConfig(**settings)), client


async def test_extraction_succeeds_first_try():
    extractor, client = _extractor(VALID_PAYLOAD)

    result = await extractor.extract_orders("1. BUY $5,000 worth AAPL", 100_000, ["AAPL"])

    assert result.attempts == 1
    assert result.orders[0].action == TradeAction.BUY
    assert client.generate.await_args.args[2] == 1500


async def test_truncated_output_retries_with_larger_budget():
    extractor, client = _extractor(TRUNCATED_PAYLOAD, VALID_PAYLOAD)

    result = await extractor.extract_orders("1. BUY $5,000 worth AAPL", 100_000, ["AAPL"])

    assert result.attempts == 2
    budgets = [call.args[2] for call in client.generate.await_args_list]
    assert budgets == [1500, 1800]
    retry_system_prompt = client.generate.await_args_list[1].args[1]
    assert retry_system_prompt != client.generate.await_args_list[0].args[1]


async def test_exhausted_attempts_raise_ai_error():
    extractor, client = _extractor(TRUNCATED_PAYLOAD, "not json", TRUNCATED_PAYLOAD)

    with pytest.raises(ExtractionError) as exc_info:
        await extractor.extract_orders("1. BUY $5,000 worth AAPL", 100_000, ["AAPL"])

    assert exc_info.value.error_type == ErrorType.AI_ERROR
    assert exc_info.value.error_type.value == "ai_error"
    assert "after 3 attempts" in exc_info.value.message
    assert client.generate.await_count == 3


async def test_credit_error_retries_once_with_reduced_budget():
    extractor, client = _extractor(
        ProviderError("This request requires more credits. You can only afford 1200 tokens"),
        VALID_PAYLOAD,
    )

    result = await extractor.extract_orders("1. BUY $5,000 worth AAPL", 100_000, ["AAPL"])

    assert result.attempts == 1
    budgets = [call.args[2] for call in client.generate.await_args_list]
    assert budgets == [1500, 1100]


async def test_reduced_budget_caps_later_attempts():
    extractor, client = _extractor(
        ProviderError("can only afford 1200"),
        TRUNCATED_PAYLOAD,
        VALID_PAYLOAD,
    )

    await extractor.extract_orders("1. BUY $5,000 worth AAPL", 100_000, ["AAPL"])

    budgets = [call.args[2] for call in client.generate.await_args_list]
    assert budgets == [1500, 1100, 1100]


async def test_second_credit_failure_surfaces_rate_limit():
    extractor, _ = _extractor(
        ProviderError("can only afford 1200"),
        ProviderError("can only afford 900"),
    )

    with pytest.raises(RateLimitError) as exc_info:
        await extractor.extract_orders("1. BUY $5,000 worth AAPL", 100_000, ["AAPL"])

    assert exc_info.value.error_type == ErrorType.RATE_LIMIT


async def test_api_key_error_is_not_retried():
    extractor, client = _extractor(ProviderError("AI provider returned status 401: invalid api key", 401))

    with pytest.raises(ProviderError) as exc_info:
        await extractor.request_decision("prompt", "system")

    assert exc_info.value.error_type == ErrorType.API_KEY
    assert client.generate.await_count == 1


async def test_transient_provider_error_is_retried():
    extractor, client = _extractor(
        ProviderError("AI provider returned status 500: upstream error", 500),
        "1. HOLD AAPL\n2. BUY $5,000 worth MSFT",
    )

    result = await extractor.request_decision("prompt", "system")

    assert result.attempts == 2
    assert [order.ticker for order in result.orders] == ["AAPL", "MSFT"]
    assert result.text == "1. HOLD AAPL\n2. BUY $5,000 worth MSFT"
