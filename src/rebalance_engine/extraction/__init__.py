"""Decision extraction: tagged-outcome parsing and bounded generation retry."""

from .parser import (
    Ok,
    Truncated,
    Malformed,
    ExtractionOutcome,
    clean_payload_text,
    close_unbalanced,
    detect_truncation,
    format_decision_lines,
    parse_itemized_decisions,
    parse_order_payload,
    serialize_orders,
    validate_orders,
)
from .extractor import DecisionExtractor, ExtractionResult

__all__ = [
    "Ok",
    "Truncated",
    "Malformed",
    "ExtractionOutcome",
    "clean_payload_text",
    "close_unbalanced",
    "detect_truncation",
    "format_decision_lines",
    "parse_itemized_decisions",
    "parse_order_payload",
    "serialize_orders",
    "validate_orders",
    "DecisionExtractor",
    "ExtractionResult",
]
