"""
Run context management using ContextVar for async-safe context propagation.
"""

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional


@dataclass
class RunContext:
    """Identifies the rebalance run a log line belongs to"""
    rebalance_request_id: str
    user_id: Optional[str] = None
    attempt: int = 1


# Context variable to store the current run across async boundaries
current_run: ContextVar[Optional[RunContext]] = ContextVar('current_run', default=None)


def set_current_run(run: RunContext) -> None:
    """Set the current run in the context."""
    current_run.set(run)


def get_current_run() -> Optional[RunContext]:
    """Get the current run from the context."""
    return current_run.get()


def clear_current_run() -> None:
    """Clear the current run from the context."""
    current_run.set(None)
