"""Exchange gateway adapters (real-mode trading)."""

from .asterdex_adapter import AsterdexAdapter
from .base import AccountBalance, ExchangeAdapter, ExchangePosition, OrderResult, floor_quantity

__all__ = [
    "AccountBalance",
    "AsterdexAdapter",
    "ExchangeAdapter",
    "ExchangePosition",
    "OrderResult",
    "floor_quantity",
]
