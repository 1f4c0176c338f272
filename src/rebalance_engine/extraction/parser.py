"""
Best-effort parsing of generation output into raw orders.

Every parse returns a tagged outcome (Ok, Truncated or Malformed) so the
retry policy can branch on the tag instead of re-inspecting the text.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

from rebalance_engine.models import RawOrder, TradeAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ok:
    orders: List[RawOrder]
    kind: str = field(default="ok", init=False)


@dataclass(frozen=True)
class Truncated:
    reason: str
    kind: str = field(default="truncated", init=False)


@dataclass(frozen=True)
class Malformed:
    reason: str
    kind: str = field(default="malformed", init=False)


ExtractionOutcome = Union[Ok, Truncated, Malformed]

DEFAULT_CONFIDENCE = 70.0

_CODE_FENCE = re.compile(r"```[A-Za-z]*")
_TRAILING_SEPARATOR = re.compile(r",\s*([\]}])")
_SMART_QUOTES = str.maketrans({
    "\u201c": '"', "\u201d": '"', "\u201e": '"', "\u2033": '"',
    "\u2018": "'", "\u2019": "'", "\u201a": "'", "\u2032": "'",
})

_DANGLING_KEY = re.compile(r'"[^"\\]+"\s*:\s*$')
_OPEN_LIST = re.compile(r'\[\s*$')
_OPEN_OBJECT = re.compile(r'\{\s*$')
_TRAILING_COMMA = re.compile(r',\s*$')

_HOLD_LINE = re.compile(r"^\s*\d+\.\s*\**\s*HOLD\s+([A-Z0-9]+(?:/[A-Z0-9]+)?)\b", re.IGNORECASE)
_TRADE_LINE = re.compile(
    r"^\s*\d+\.\s*\**\s*(BUY|SELL)\s+\$\s*([0-9][0-9,]*(?:\.[0-9]+)?)\s+worth\s+(?:of\s+)?([A-Z0-9]+(?:/[A-Z0-9]+)?)\b",
    re.IGNORECASE,
)
_PARTIAL_ACTION_LINE = re.compile(r"^\s*\d+\.\s*\**\s*(?:(?:BUY|SELL|HOLD)\b.*)?$", re.IGNORECASE)
_INLINE_ACTION = re.compile(
    r"(\d+\.\s*(?:BUY|SELL|HOLD)\s+(?:\$[\d,]+(?:\.\d+)?\s+worth\s+)?[A-Z0-9]+(?:/[A-Z0-9]+)?)",
    re.IGNORECASE,
)


def clean_payload_text(text: str) -> str:
    """Strip code fences, smart quotes, leading prose and trailing separators"""
    cleaned = _CODE_FENCE.sub("", text or "")
    cleaned = cleaned.translate(_SMART_QUOTES).strip()

    starts = [index for index in (cleaned.find("{"), cleaned.find("[")) if index >= 0]
    if starts:
        cleaned = cleaned[min(starts):]

    return _TRAILING_SEPARATOR.sub(r"\1", cleaned)


def _scan(text: str) -> Tuple[Optional[int], List[str], bool]:
    """
    Walk brackets and braces outside of strings.

    Returns:
        (index where the first top-level value closes or None, unmatched openers, inside_string)
    """
    stack: List[str] = []
    in_string = False
    escaped = False

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append(char)
        elif char in "}]":
            if stack:
                stack.pop()
            if not stack:
                return index, [], False

    return None, stack, in_string


def detect_truncation(text: str) -> Optional[str]:
    """Return why the payload looks cut off, or None if it ends cleanly"""
    tail = (text or "").rstrip()
    if not tail:
        return "empty payload"

    _, stack, in_string = _scan(tail)
    if in_string:
        return "unterminated string"
    if _DANGLING_KEY.search(tail):
        return "dangling key"
    if _OPEN_LIST.search(tail):
        return "unterminated list"
    if _TRAILING_COMMA.search(tail) or (_OPEN_OBJECT.search(tail) and stack):
        return "dangling separator"
    # only a completed object or list may be auto-closed
    if stack and tail[-1] not in "}]":
        return "unterminated value"
    return None


def close_unbalanced(text: str) -> str:
    """Append closers for any brackets or braces left open, innermost first"""
    _, stack, _ = _scan(text)
    closers = {"{": "}", "[": "]"}
    return text + "".join(closers[opener] for opener in reversed(stack))


def _parse_amount(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).replace("$", "").replace(",", "").strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def _records_from(data: Any) -> Optional[List[Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("orders", "trades", "actions"):
            if isinstance(data.get(key), list):
                return data[key]
        if "ticker" in data:
            return [data]
    return None


def validate_orders(data: Any, total_value: float) -> ExtractionOutcome:
    """Validate parsed payload records; any out-of-range amount rejects the whole batch"""
    records = _records_from(data)
    if records is None:
        return Malformed("payload has no order list")
    if not records:
        return Malformed("payload contains no orders")

    orders: List[RawOrder] = []
    for position, record in enumerate(records):
        if not isinstance(record, dict):
            return Malformed(f"record {position} is not an object")

        ticker = str(record.get("ticker") or record.get("symbol") or "").strip().upper()
        if not ticker:
            return Malformed(f"record {position} has no ticker")

        raw_action = str(record.get("action") or "").strip().upper()
        if raw_action not in TradeAction.__members__:
            return Malformed(f"{ticker}: unknown action '{record.get('action')}'")
        action = TradeAction(raw_action)

        amount = _parse_amount(
            record.get("dollarAmount", record.get("dollar_amount", record.get("amount")))
        )
        if amount is None:
            if action != TradeAction.HOLD:
                return Malformed(f"{ticker}: {action.value} without a dollar amount")
            amount = 0.0
        if amount < 0 or amount > total_value:
            return Malformed(f"{ticker}: dollar amount {amount} outside [0, {total_value}]")

        confidence = _parse_amount(record.get("confidence"))
        orders.append(RawOrder(
            ticker=ticker,
            action=action,
            dollar_amount=amount,
            shares=_parse_amount(record.get("shares")) or 0.0,
            confidence=confidence if confidence is not None else DEFAULT_CONFIDENCE,
            reasoning=record.get("reasoning") or record.get("reason"),
        ))

    return Ok(orders)


def parse_order_payload(text: str, total_value: float) -> ExtractionOutcome:
    """
    Parse a semi-structured order payload.

    Strips known noise and attempts a direct parse. On failure it locates the
    payload boundary by bracket counting, or, when the payload never closes,
    classifies it as truncated if it ends mid-value and otherwise auto-closes
    the open brackets before parsing again.
    """
    if not text or not text.strip():
        return Malformed("empty response")

    cleaned = clean_payload_text(text)
    if not cleaned or cleaned[0] not in "{[":
        return Malformed("no structured payload found")

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        end, stack, in_string = _scan(cleaned)
        if end is not None:
            candidate = cleaned[:end + 1]
        else:
            reason = detect_truncation(cleaned)
            if reason:
                logger.warning(f"Payload truncated ({reason})")
                return Truncated(reason)
            candidate = close_unbalanced(cleaned)
            logger.debug(f"Auto-closed {len(stack)} unmatched brackets")

        try:
            data = json.loads(_TRAILING_SEPARATOR.sub(r"\1", candidate))
        except json.JSONDecodeError:
            return Malformed(f"unparseable payload: {e.msg}")

    return validate_orders(data, total_value)


def serialize_orders(orders: List[RawOrder]) -> str:
    """Render orders in the payload shape accepted by parse_order_payload"""
    return json.dumps({
        "orders": [
            {
                "ticker": order.ticker,
                "action": order.action.value,
                "dollarAmount": order.dollar_amount,
            }
            for order in orders
        ]
    })


def format_decision_lines(text: str) -> str:
    """Put every numbered BUY/SELL/HOLD item on its own line"""
    formatted = (text or "").strip()
    matches = _INLINE_ACTION.findall(formatted)
    if not matches:
        return formatted

    lines = [line.strip() for line in formatted.splitlines() if line.strip()]
    if len(lines) >= len(matches):
        return "\n".join(lines)

    result = formatted
    for match in matches[1:]:
        result = re.sub(r"\s*" + re.escape(match), "\n" + match, result, count=1)
    return "\n".join(line.strip() for line in result.splitlines() if line.strip())


def parse_itemized_decisions(text: str) -> ExtractionOutcome:
    """
    Parse a numbered decision list of the form:

        1. HOLD AAPL
        2. BUY $5,000 worth MSFT
        3. SELL $2,000 worth TSLA

    A trailing numbered line that does not match either form means the
    response was cut off mid-item.
    """
    if not text or not text.strip():
        return Malformed("empty response")

    orders: List[RawOrder] = []
    seen = set()
    last_numbered_matched = True

    for line in format_decision_lines(text).splitlines():
        if not line.strip():
            continue

        hold_match = _HOLD_LINE.match(line)
        trade_match = _TRADE_LINE.match(line)

        if hold_match:
            ticker = hold_match.group(1).upper()
            order = RawOrder(ticker=ticker, action=TradeAction.HOLD)
        elif trade_match:
            ticker = trade_match.group(3).upper()
            order = RawOrder(
                ticker=ticker,
                action=TradeAction(trade_match.group(1).upper()),
                dollar_amount=float(trade_match.group(2).replace(",", "")),
            )
        else:
            if _PARTIAL_ACTION_LINE.match(line):
                last_numbered_matched = False
            continue

        last_numbered_matched = True
        if ticker in seen:
            logger.warning(f"{ticker}: duplicate decision line ignored")
            continue
        seen.add(ticker)
        orders.append(order)

    if not last_numbered_matched:
        return Truncated("incomplete final decision line")
    if not orders:
        return Malformed("no decision lines found")
    return Ok(orders)
