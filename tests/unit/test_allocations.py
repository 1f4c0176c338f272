"""
Tests for target allocation planning.
"""
import pytest

from rebalance_engine.allocations import (
    MAX_PER_STOCK_PERCENT,
    MIN_PER_STOCK_PERCENT,
    calculate_target_allocations,
    normalize_risk_profile,
)
from rebalance_engine.models import RiskDecision


def _decision(ticker, intent, confidence=70.0, risk_score=5.0):
    return RiskDecision(ticker=ticker, intent=intent, confidence=confidence, risk_score=risk_score)


def test_allocations_and_cash_sum_to_hundred():
    decisions = {
        "AAPL": _decision("AAPL", "BUILD", 80),
        "MSFT": _decision("MSFT", "ADD", 60),
        "TSLA": _decision("TSLA", "HOLD"),
    }
    plan = calculate_target_allocations(["AAPL", "MSFT", "TSLA"], decisions, 20.0)

    assert plan.stock_allocation + plan.cash_allocation == pytest.approx(100.0)
    for ticker in ("AAPL", "MSFT"):
        assert MIN_PER_STOCK_PERCENT <= plan.allocations[ticker] <= MAX_PER_STOCK_PERCENT


def test_exit_goes_to_zero_and_trim_keeps_minimum():
    decisions = {
        "AAPL": _decision("AAPL", "EXIT"),
        "MSFT": _decision("MSFT", "TRIM"),
    }
    plan = calculate_target_allocations(["AAPL", "MSFT"], decisions, 20.0)

    assert plan.allocations["AAPL"] == 0.0
    assert plan.allocations["MSFT"] == MIN_PER_STOCK_PERCENT


def test_unanalyzed_held_ticker_gets_profile_share():
    plan = calculate_target_allocations([], {}, 20.0, "conservative", held_tickers=["NVDA"])

    assert plan.allocations["NVDA"] == 3.0
    assert plan.buckets["unanalyzed"] == ["NVDA"]


def test_conservative_profile_reduces_high_risk_buys():
    decisions = {
        "AAPL": _decision("AAPL", "BUILD", 50, risk_score=9.0),
        "MSFT": _decision("MSFT", "BUILD", 50, risk_score=3.0),
        "GOOG": _decision("GOOG", "BUILD", 50, risk_score=3.0),
        "AMZN": _decision("AMZN", "BUILD", 50, risk_score=3.0),
        "META": _decision("META", "BUILD", 50, risk_score=3.0),
    }
    moderate = calculate_target_allocations(list(decisions), decisions, 20.0, "moderate")
    conservative = calculate_target_allocations(list(decisions), decisions, 20.0, "conservative")

    assert conservative.allocations["AAPL"] <= moderate.allocations["AAPL"]


def test_unknown_profile_falls_back_to_moderate():
    assert normalize_risk_profile("YOLO") == "moderate"
    assert normalize_risk_profile(None) == "moderate"
    assert normalize_risk_profile(" Aggressive ") == "aggressive"


def test_recommended_positions_report_target_value():
    decisions = {"AAPL": _decision("AAPL", "BUILD", 80)}
    plan = calculate_target_allocations(["AAPL"], decisions, 80.0)

    positions = plan.recommended_positions(100_000)

    assert positions[0]["ticker"] == "AAPL"
    assert positions[0]["direction"] == "buy"
    assert positions[0]["targetValue"] == pytest.approx(100_000 * plan.allocations["AAPL"] / 100)
