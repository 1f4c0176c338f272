"""Prompt text for the decision, extraction and reasoning generation calls."""

from dataclasses import dataclass, field
from typing import Dict, List

from rebalance_engine.models import PendingOrder, Position, PositionSizing, RiskDecision

BASE_HIGH_CONFIDENCE = 70


@dataclass
class PromptContext:
    """Portfolio facts rendered into the decision and reasoning prompts"""
    total_value: float
    available_cash: float
    deployable_cap: float
    current_cash: float
    target_cash_percent: float
    positions: List[Position]
    tickers: List[str]
    allowed_tickers: List[str]
    blocked_tickers: List[str]
    risk_decisions: Dict[str, RiskDecision]
    sizing: PositionSizing
    risk_profile: str = "moderate"
    pending_display: str = ""
    near_limit_threshold: float = 20.0
    near_position_threshold: float = 20.0
    position_lookup: Dict[str, Position] = field(init=False)

    def __post_init__(self):
        self.position_lookup = {position.ticker: position for position in self.positions}

    @property
    def cash_percent(self) -> float:
        return (self.current_cash / self.total_value * 100) if self.total_value > 0 else 0.0

    def cash_status(self) -> str:
        gap = self.cash_percent - self.target_cash_percent
        if abs(gap) < 10:
            return "BALANCED"
        if gap > 0:
            return "EXCESS CASH - incremental adds allowed while preserving the cash floor"
        return "LOW CASH - prioritize rebuilding the cash buffer"


def high_confidence_threshold(risk_profile: str) -> int:
    if risk_profile == "conservative":
        return round(BASE_HIGH_CONFIDENCE / 0.95)
    if risk_profile == "aggressive":
        return round(BASE_HIGH_CONFIDENCE / 1.05)
    return BASE_HIGH_CONFIDENCE


def format_risk_decision(decision: RiskDecision) -> str:
    extras = []
    if decision.suggested_percent:
        extras.append(decision.suggested_percent)
    extras.append(f"-> {decision.direction.value}")
    return f"{decision.intent.value} ({', '.join(extras)}) @ {decision.confidence:.0f}%"


def format_pending_orders(open_orders: List[PendingOrder], reserved_capital: float) -> str:
    """Render the pending-order exclusion block; empty when nothing is pending"""
    if not open_orders:
        return ""

    lines = []
    for order in open_orders:
        line = f"X {order.ticker}: {order.side.upper()} {order.qty if order.qty is not None else 'N/A'} shares"
        if order.notional:
            line += f" (${order.notional:,.2f})"
        if order.limit_price:
            line += f" @ limit ${order.limit_price:,.2f}"
        lines.append(line)

    return (
        f"\n\nCRITICAL: PENDING ORDERS DETECTED ({len(open_orders)} total, ${reserved_capital:,.2f} reserved):\n  "
        + "\n  ".join(lines)
        + "\n\nMANDATORY RULE: DO NOT create orders for any tickers with pending orders above!"
    )


def _position_line(position: Position, ctx: PromptContext) -> str:
    percent = position.market_value / ctx.total_value * 100 if ctx.total_value > 0 else 0.0
    decision = ctx.risk_decisions.get(position.ticker)
    if position.ticker in ctx.tickers:
        tag = f"[RM: {format_risk_decision(decision) if decision else 'N/A'}]"
    else:
        tag = "[NOT IN LIST]"
    return f"- {position.ticker}: ${position.market_value:,.0f} ({percent:.1f}%) {tag}"


def _decision_block(ticker: str, decision: RiskDecision, ctx: PromptContext) -> str:
    position = ctx.position_lookup.get(ticker)
    slice_text = f" | Suggested slice: {decision.suggested_percent}" if decision.suggested_percent else ""
    holding = (f"{position.shares:g} shares = ${position.market_value:,.2f}"
               if position else "NO POSITION")
    return (
        f"{ticker}:\n"
        f"    - Risk Manager Intent: {decision.intent.value} ({decision.direction.value}) "
        f"{decision.confidence:.0f}% confidence{slice_text}\n"
        f"    - Risk Score: {decision.risk_score:g}/10\n"
        f"    - Current Position: {holding}"
    )


def _cash_guidance(ctx: PromptContext) -> str:
    directions = {decision.direction.value for decision in ctx.risk_decisions.values()}
    cap = ctx.deployable_cap
    if "BUY" in directions and "SELL" not in directions:
        if cap <= 0:
            availability = "NO DEPLOYABLE CASH: cannot execute ANY BUY orders - only HOLD allowed"
        elif cap < (ctx.sizing.default_position_size or 1000):
            availability = f"LIMITED DEPLOYABLE CASH: only ${cap:,.0f} available - prioritize highest confidence BUYs"
        else:
            availability = f"Deployable cash: ${cap:,.0f} without breaching the cash target"
        return (
            f"CASH AVAILABILITY FOR BUY ORDERS:\n  {availability}\n"
            f"  - Total BUY orders MUST NOT exceed ${cap:,.0f}\n"
            f"  - If total BUYs would exceed deployable cash, reduce or drop the lowest confidence BUYs"
        )
    if "SELL" in directions and "BUY" not in directions:
        return ("SELL ORDER EXECUTION:\n"
                "  - SELL orders increase cash and are always allowed\n"
                "  - Follow Risk Manager confidence levels for sizing")
    if "BUY" in directions and "SELL" in directions:
        return (f"MIXED ORDER MANAGEMENT:\n"
                f"  - Execute high-confidence ({high_confidence_threshold(ctx.risk_profile)}%+) decisions first\n"
                f"  - Deployable cash for BUYs: ${cap:,.0f}\n"
                f"  - Total BUY orders cannot exceed deployable cash plus SELL proceeds")
    return (f"PORTFOLIO MAINTENANCE:\n"
            f"  - Current cash: ${ctx.available_cash:,.0f} (deployable cap ${cap:,.0f})")


def build_decision_prompt(ctx: PromptContext) -> str:
    threshold = high_confidence_threshold(ctx.risk_profile)
    min_dollars = ctx.sizing.min_position_dollars(ctx.total_value)
    max_dollars = ctx.sizing.max_position_dollars(ctx.total_value)
    increment = ctx.sizing.default_position_size or 1000

    if ctx.blocked_tickers:
        exclusion = (f"These tickers have PENDING ORDERS and are EXCLUDED from new orders: "
                     f"{', '.join(ctx.blocked_tickers)}\n"
                     f"  Only create orders for: {', '.join(ctx.allowed_tickers) or 'NONE - all tickers blocked'}")
    else:
        exclusion = "All tickers available (no pending orders detected)"

    if ctx.allowed_tickers:
        template = "\n  ".join(
            f"{index}. [ACTION] $[amount] worth {ticker}"
            for index, ticker in enumerate(ctx.allowed_tickers, start=1)
        )
        output_format = (f"MANDATORY: provide a decision for EVERY ticker below:\n  {template}\n\n"
                         f"  Example (each on its own line):\n"
                         f"  1. BUY $15000 worth TSLA\n  2. SELL $8500 worth NVDA\n  3. HOLD AAPL")
    else:
        output_format = "NO TRADES - all tickers have pending orders"

    positions = "\n  ".join(_position_line(position, ctx) for position in ctx.positions) or "NONE"
    decisions = "\n  ".join(
        _decision_block(ticker, decision, ctx) for ticker, decision in ctx.risk_decisions.items()
    ) or "NONE"

    return f"""
  PORTFOLIO MANAGER - Quick Rebalance Decision

  PRIORITIES:
  1. Execute high-confidence ({threshold}%+) Risk Manager decisions
  2. Keep portfolio cash at or ABOVE the {ctx.target_cash_percent:g}% target allocation

  PENDING ORDERS EXCLUSION:
  {exclusion}{ctx.pending_display}

  PORTFOLIO STATUS:
  - Total Value: ${ctx.total_value:,.2f}
  - Available Cash: ${ctx.available_cash:,.2f} (adjusted for pending orders)
  - Allowed Deployable Cash: ${ctx.deployable_cap:,.0f}
  - Cash Position: {ctx.cash_percent:.1f}% vs {ctx.target_cash_percent:g}% target
  - Cash Status: {ctx.cash_status()}
  - User Targets: {ctx.sizing.profit_target_percent:g}% profit / -{ctx.sizing.stop_loss_percent:g}% stop loss (near threshold +/-{ctx.near_limit_threshold:g}%)

  CURRENT POSITIONS:
  {positions}

  RISK MANAGER DECISIONS:
  {decisions}

  USER CONSTRAINTS:
  - Risk Level: {ctx.risk_profile.upper()}
  - Min Position: ${min_dollars:,.0f}
  - Max Position: ${max_dollars:,.0f}
  - Round to multiples of: ${increment:,.0f}

  {_cash_guidance(ctx)}

  OUTPUT FORMAT (numbered list, EACH ACTION ON A SEPARATE LINE):
  {output_format}

  RULES:
  - Include ALL {len(ctx.allowed_tickers)} allowed tickers, one line each
  - State definitive amounts (e.g. "$3500" not "about $3500")
  - Use HOLD when no action is needed
  - NO explanations or reasoning
  """


DECISION_SYSTEM_PROMPT = """You are a Rebalance Portfolio Manager optimizing portfolio allocation.

You MUST provide a decision for EVERY ticker in the rebalance list.

DECISION HIERARCHY:
1. High-confidence Risk Manager decisions
2. Portfolio balance toward target allocations
3. Respect the cash floor: the sum of BUY orders never exceeds the allowed deployable cash

OUTPUT RULES:
- Format: "N. [ACTION] $[amount] worth [TICKER]" or "N. HOLD [TICKER]"
- Each action on its own line
- Include ALL tickers, use HOLD if no change is needed
- No reasoning or explanations"""


EXTRACTION_SYSTEM_PROMPT = """You convert portfolio manager decisions into a JSON payload.

Respond with JSON only, no prose and no code fences, in exactly this shape:
{"orders": [{"ticker": "AAPL", "action": "BUY", "dollarAmount": 5000}]}

- action is one of BUY, SELL, HOLD
- dollarAmount is a plain number, 0 for HOLD
- include one record per ticker in the decision"""


def build_extraction_prompt(decision_text: str, tickers: List[str], total_value: float) -> str:
    return f"""Extract every decision below into the JSON payload.

Portfolio value: ${total_value:,.2f} (no dollarAmount may exceed it)
Tickers expected: {', '.join(tickers) or 'as listed'}

DECISIONS:
{decision_text}
"""


def completeness_instruction(attempt: int, truncated: bool = False) -> str:
    """Stronger completeness wording appended to the system prompt on retries"""
    if truncated:
        lead = "Your previous response was cut off before it finished."
    else:
        lead = "Your previous response could not be parsed."
    return (f"IMPORTANT (attempt {attempt}): {lead} Return the COMPLETE output for every ticker, "
            f"closing every list and object. Keep it as short as possible and add nothing else.")


def build_reasoning_prompt(decision_text: str, ctx: PromptContext) -> str:
    positions = "\n".join(_position_line(position, ctx) for position in ctx.positions) or "NONE"
    decisions = "\n".join(
        _decision_block(ticker, decision, ctx) for ticker, decision in ctx.risk_decisions.items()
    ) or "NONE"
    return f"""
As a Rebalance Portfolio Reasoning Analyst, explain the Rebalance Portfolio Manager's decisions.

DECISIONS:
{decision_text}

PORTFOLIO CONTEXT:
- Total Value: ${ctx.total_value:,.2f}
- Available Cash: ${ctx.available_cash:,.2f}
- Allowed Deployable Cash: ${ctx.deployable_cap:,.0f}
- Cash Position: {ctx.cash_percent:.1f}% vs {ctx.target_cash_percent:g}% target ({ctx.cash_status()})

CURRENT POSITIONS:
{positions}

RISK MANAGER ASSESSMENTS:
{decisions}

USER PROFILE:
- Risk Level: {ctx.risk_profile}
- Target Allocation: {ctx.target_cash_percent:g}% cash, {100 - ctx.target_cash_percent:g}% stocks

Explain portfolio balance, alignment with the risk assessments, cash management against the
target, how BUY orders stay within deployable cash, and the position sizing for each decision.
"""


REASONING_SYSTEM_PROMPT = """You are a Rebalance Portfolio Reasoning Analyst explaining portfolio rebalancing decisions.

Give clear, educational explanations of why each trade was recommended, how risk management and
user constraints shaped it, and how cash was managed. Use headings and bullet points."""
