"""
Tests for the deployable cash cap, the running cash ledger and BUY scaling.
"""
import pytest

from rebalance_engine.cash_constraints import CashLedger, calculate_deployable_cap, scale_to_cap


def test_cap_is_cash_above_the_floor():
    assert calculate_deployable_cap(50_000, 100_000, 20) == pytest.approx(30_000)


def test_cap_is_zero_when_cash_equals_floor():
    assert calculate_deployable_cap(20_000, 100_000, 20) == 0.0


def test_cap_never_negative():
    assert calculate_deployable_cap(5_000, 100_000, 20) == 0.0


@pytest.mark.parametrize("cash,total,target", [
    (float("nan"), 100_000, 20),
    (None, 100_000, 20),
    (-1_000, 100_000, 20),
    ("abc", 100_000, 20),
])
def test_invalid_inputs_are_treated_as_zero(cash, total, target):
    assert calculate_deployable_cap(cash, total, target) == 0.0


def test_target_above_hundred_is_clamped():
    assert calculate_deployable_cap(100_000, 100_000, 150) == 0.0


def test_scale_preserves_ratio_within_cap():
    factor, scaled = scale_to_cap([30_000, 20_000], 25_000)

    assert factor == pytest.approx(0.5)
    assert scaled == [15_000, 10_000]
    assert sum(scaled) <= 25_000
    assert scaled[0] / scaled[1] == pytest.approx(30_000 / 20_000)


def test_scale_is_noop_when_under_cap():
    factor, scaled = scale_to_cap([1_000, 2_000], 5_000)

    assert factor == 1.0
    assert scaled == [1_000, 2_000]


def test_scaled_amounts_round_down_to_cents():
    _, scaled = scale_to_cap([100.0, 100.0, 100.0], 100.0)

    assert all(amount == 33.33 for amount in scaled)
    assert sum(scaled) <= 100.0


def test_ledger_buys_consume_cap():
    ledger = CashLedger(available_cash=50_000, total_value=100_000, target_cash_percent=20)

    assert ledger.initial_cap == pytest.approx(30_000)
    ledger.apply_buy(10_000)
    assert ledger.current_cap() == pytest.approx(10_000)


def test_ledger_sell_proceeds_raise_cap():
    ledger = CashLedger(available_cash=20_000, total_value=100_000, target_cash_percent=20)
    assert ledger.current_cap() == 0.0

    ledger.apply_sell(8_000)

    assert ledger.current_cap() == pytest.approx(8_000)
    assert ledger.initial_cap == 0.0
