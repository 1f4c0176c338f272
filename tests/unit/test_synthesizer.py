"""
Tests for order synthesis: intent overrides, position-size rules and the cash cap.
"""
import pytest

from rebalance_engine.models import (
    Position,
    PositionSizing,
    RawOrder,
    RiskDecision,
    RiskIntent,
    TradeAction,
)
from rebalance_engine.synthesizer import (
    OrderSynthesizer,
    SynthesisContext,
    parse_percent,
    round_to_increment,
)


def _context(**overrides):
    values = dict(
        total_value=100_000.0,
        available_cash=40_000.0,
        target_cash_percent=20.0,
        sizing=PositionSizing(min_position_percent=5.0, stop_loss_percent=10.0),
    )
    values.update(overrides)
    return SynthesisContext(**values)


def _position(ticker, value, price=100.0):
    return Position(ticker=ticker, shares=value / price, current_price=price, market_value=value)


def _by_ticker(result):
    return {action.ticker: action for action in result.actions}


def test_buy_downgraded_to_hold_when_cap_exhausted():
    context = _context(
        available_cash=20_000.0,
        risk_decisions={"AAPL": RiskDecision(ticker="AAPL", intent="BUILD", suggested_percent="10%")},
        tickers=["AAPL"],
    )

    result = OrderSynthesizer().synthesize([RawOrder(ticker="AAPL", action="BUY", dollar_amount=10_000)], context)

    action = _by_ticker(result)["AAPL"]
    assert result.initial_cap == 0.0
    assert action.action == TradeAction.HOLD
    assert action.dollar_amount == 0.0
    assert "deployable cash exhausted" in action.reasoning
    assert result.summary.total_trades == 0


def test_small_position_within_stop_loss_stays_hold():
    context = _context(positions={"MU": _position("MU", 4_800)}, tickers=["MU"])

    result = OrderSynthesizer().synthesize([RawOrder(ticker="MU", action="HOLD")], context)

    action = _by_ticker(result)["MU"]
    assert action.action == TradeAction.HOLD
    assert "within stop-loss range" in action.reasoning


def test_small_position_beyond_stop_loss_is_closed():
    context = _context(positions={"MU": _position("MU", 3_000)}, tickers=["MU"])

    result = OrderSynthesizer().synthesize([RawOrder(ticker="MU", action="HOLD")], context)

    action = _by_ticker(result)["MU"]
    assert action.action == TradeAction.SELL
    assert action.dollar_amount == pytest.approx(3_000)
    assert action.share_change == pytest.approx(-30)
    assert action.target_shares == 0


def test_partial_sell_leaving_sub_minimum_remainder_sells_everything():
    context = _context(positions={"AAPL": _position("AAPL", 10_000)}, tickers=["AAPL"])

    result = OrderSynthesizer().synthesize([RawOrder(ticker="AAPL", action="SELL", dollar_amount=7_000)], context)

    action = _by_ticker(result)["AAPL"]
    assert action.action == TradeAction.SELL
    assert action.dollar_amount == pytest.approx(10_000)
    assert "full exit" in action.reasoning


def test_total_buys_never_exceed_initial_cap():
    context = _context(tickers=["AAA", "BBB", "CCC"])
    raw = [RawOrder(ticker=ticker, action="BUY", dollar_amount=15_000) for ticker in ("AAA", "BBB", "CCC")]

    result = OrderSynthesizer().synthesize(raw, context)

    total_buys = sum(action.dollar_amount for action in result.actions if action.action == TradeAction.BUY)
    assert result.initial_cap == pytest.approx(20_000)
    assert total_buys <= result.initial_cap + 1e-6
    assert _by_ticker(result)["CCC"].action == TradeAction.HOLD


def test_exactly_one_action_per_considered_ticker():
    context = _context(positions={"MSFT": _position("MSFT", 6_000)}, tickers=["AAPL", "MSFT"])
    raw = [
        RawOrder(ticker="AAPL", action="BUY", dollar_amount=6_000),
        RawOrder(ticker="aapl", action="SELL", dollar_amount=1_000),
        RawOrder(ticker="NVDA", action="BUY", dollar_amount=6_000),
    ]

    result = OrderSynthesizer().synthesize(raw, context)

    tickers = [action.ticker for action in result.actions]
    assert sorted(tickers) == ["AAPL", "MSFT"]
    assert _by_ticker(result)["AAPL"].action == TradeAction.BUY
    assert _by_ticker(result)["MSFT"].action == TradeAction.HOLD


def test_blocked_ticker_gets_no_action():
    context = _context(blocked_tickers={"TSLA"}, tickers=["AAPL", "TSLA"])
    raw = [RawOrder(ticker="TSLA", action="BUY", dollar_amount=6_000)]

    result = OrderSynthesizer().synthesize(raw, context)

    assert "TSLA" not in _by_ticker(result)


def test_build_on_existing_position_becomes_add():
    context = _context(
        positions={"MSFT": _position("MSFT", 6_000)},
        risk_decisions={"MSFT": RiskDecision(ticker="MSFT", intent="BUILD", suggested_percent="10%")},
        tickers=["MSFT"],
    )

    result = OrderSynthesizer().synthesize([RawOrder(ticker="MSFT", action="BUY", dollar_amount=9_000)], context)

    action = _by_ticker(result)["MSFT"]
    assert action.risk_intent == RiskIntent.ADD
    assert action.action == TradeAction.BUY
    assert action.dollar_amount == pytest.approx(600)


def test_exit_intent_overrides_extracted_hold():
    context = _context(
        positions={"AAPL": _position("AAPL", 12_000)},
        risk_decisions={"AAPL": RiskDecision(ticker="AAPL", intent="EXIT")},
        tickers=["AAPL"],
    )

    result = OrderSynthesizer().synthesize([RawOrder(ticker="AAPL", action="HOLD")], context)

    action = _by_ticker(result)["AAPL"]
    assert action.action == TradeAction.SELL
    assert action.dollar_amount == pytest.approx(12_000)


def test_sell_without_position_becomes_hold():
    context = _context(tickers=["AAPL"])

    result = OrderSynthesizer().synthesize([RawOrder(ticker="AAPL", action="SELL", dollar_amount=5_000)], context)

    action = _by_ticker(result)["AAPL"]
    assert action.action == TradeAction.HOLD
    assert "no position to sell" in action.reasoning


def test_summary_tracks_expected_cash():
    context = _context(
        positions={"MSFT": _position("MSFT", 10_000)},
        tickers=["AAPL", "MSFT"],
        current_cash=40_000.0,
    )
    raw = [
        RawOrder(ticker="AAPL", action="BUY", dollar_amount=8_000),
        RawOrder(ticker="MSFT", action="SELL", dollar_amount=10_000),
    ]

    result = OrderSynthesizer().synthesize(raw, context)

    assert result.summary.buy_orders == 1
    assert result.summary.sell_orders == 1
    assert result.summary.expected_cash_after == pytest.approx(40_000 + 10_000 - 8_000)


def test_buy_raised_to_minimum_position():
    context = _context(tickers=["AAPL"])

    result = OrderSynthesizer().synthesize([RawOrder(ticker="AAPL", action="BUY", dollar_amount=2_000)], context)

    action = _by_ticker(result)["AAPL"]
    assert action.action == TradeAction.BUY
    assert action.dollar_amount == pytest.approx(5_000)
    assert "raised to minimum position" in action.reasoning


def test_buy_below_noise_floor_becomes_hold():
    # cap of $300 is under 0.5% of a $100k portfolio
    context = _context(available_cash=20_300.0, positions={"AAPL": _position("AAPL", 6_000)}, tickers=["AAPL"])

    result = OrderSynthesizer().synthesize([RawOrder(ticker="AAPL", action="BUY", dollar_amount=1_000)], context)

    action = _by_ticker(result)["AAPL"]
    assert action.action == TradeAction.HOLD
    assert "deployable cash below noise floor" in action.reasoning


def test_amounts_rounded_to_position_increment():
    context = _context(
        sizing=PositionSizing(min_position_percent=5.0, stop_loss_percent=10.0, default_position_size=1_000),
        positions={"MSFT": _position("MSFT", 10_000)},
        tickers=["AAPL", "MSFT"],
    )
    raw = [
        RawOrder(ticker="AAPL", action="BUY", dollar_amount=6_400),
        RawOrder(ticker="MSFT", action="SELL", dollar_amount=2_600),
    ]

    actions = _by_ticker(OrderSynthesizer().synthesize(raw, context))

    assert actions["AAPL"].dollar_amount == pytest.approx(6_000)
    assert actions["MSFT"].action == TradeAction.SELL
    assert actions["MSFT"].dollar_amount == pytest.approx(3_000)


@pytest.mark.parametrize("suggested,expected", [("25%", 5_000), (None, 10_000)])
def test_trim_intent_sells_suggested_slice(suggested, expected):
    context = _context(
        positions={"NVDA": _position("NVDA", 20_000)},
        risk_decisions={"NVDA": RiskDecision(ticker="NVDA", intent="TRIM", suggested_percent=suggested)},
        tickers=["NVDA"],
    )

    result = OrderSynthesizer().synthesize([RawOrder(ticker="NVDA", action="HOLD")], context)

    action = _by_ticker(result)["NVDA"]
    assert action.action == TradeAction.SELL
    assert action.dollar_amount == pytest.approx(expected)
    assert action.target_value == pytest.approx(20_000 - expected)


def test_sell_proceeds_do_not_lift_buys_past_initial_cap():
    # initial cap $4,000; selling MSFT lifts the running cap to $14,000
    context = _context(
        available_cash=24_000.0,
        positions={"MSFT": _position("MSFT", 10_000), "AAPL": _position("AAPL", 6_000)},
    )
    raw = [
        RawOrder(ticker="MSFT", action="SELL", dollar_amount=10_000),
        RawOrder(ticker="AAPL", action="BUY", dollar_amount=10_000),
    ]

    result = OrderSynthesizer().synthesize(raw, context)

    action = _by_ticker(result)["AAPL"]
    assert result.initial_cap == pytest.approx(4_000)
    assert result.scaling_factor == pytest.approx(0.4)
    assert action.action == TradeAction.BUY
    assert action.dollar_amount == pytest.approx(4_000)
    assert action.target_value == pytest.approx(10_000)
    assert "scaled by cash cap" in action.reasoning
    assert result.summary.total_buy_value <= result.initial_cap + 0.01


def test_scaled_new_position_below_minimum_becomes_hold():
    context = _context(available_cash=24_000.0, positions={"MSFT": _position("MSFT", 10_000)})
    raw = [
        RawOrder(ticker="MSFT", action="SELL", dollar_amount=10_000),
        RawOrder(ticker="AAPL", action="BUY", dollar_amount=10_000),
    ]

    result = OrderSynthesizer().synthesize(raw, context)

    action = _by_ticker(result)["AAPL"]
    assert action.action == TradeAction.HOLD
    assert action.dollar_amount == 0.0
    assert "scaled below minimum, holding" in action.reasoning
    assert result.summary.buy_orders == 0


def test_buy_scaled_to_zero_when_initial_cap_is_zero():
    context = _context(available_cash=20_000.0, positions={"MSFT": _position("MSFT", 10_000)})
    raw = [
        RawOrder(ticker="MSFT", action="SELL", dollar_amount=10_000),
        RawOrder(ticker="AAPL", action="BUY", dollar_amount=6_000),
    ]

    result = OrderSynthesizer().synthesize(raw, context)

    action = _by_ticker(result)["AAPL"]
    assert result.initial_cap == 0.0
    assert action.action == TradeAction.HOLD
    assert "scaled to HOLD by cash cap" in action.reasoning
    assert _by_ticker(result)["MSFT"].action == TradeAction.SELL


@pytest.mark.parametrize("text,expected", [
    ("10%", 0.10),
    ("10-15%", 0.125),
    ("about 5 percent", 0.05),
    ("", None),
    ("none", None),
])
def test_parse_percent(text, expected):
    assert parse_percent(text) == (pytest.approx(expected) if expected is not None else None)


@pytest.mark.parametrize("amount,increment,expected", [
    (1_200, 500, 1_000),
    (1_300, 500, 1_500),
    (200, 500, 500),
    (1_234.5, None, 1_234.5),
    (0, 500, 0.0),
])
def test_round_to_increment(amount, increment, expected):
    assert round_to_increment(amount, increment) == expected
