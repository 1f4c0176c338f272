"""
Rebalance engine: turns per-ticker risk decisions and a live portfolio into
cash-safe trade orders.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
