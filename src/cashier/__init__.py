"""
Voice cashier package.

Names below resolve lazily so pure modules like `src.cashier.receipt` import
without the runtime stack (dotenv, openai, websockets).
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.cashier.config import Config, get_config
    from src.cashier.controller import TurnController, TurnState
    from src.cashier.receipt import OrderReceipt, extract_receipt, strip_receipt_block

_EXPORTS = {
    "Config": "src.cashier.config",
    "get_config": "src.cashier.config",
    "OrderReceipt": "src.cashier.receipt",
    "extract_receipt": "src.cashier.receipt",
    "strip_receipt_block": "src.cashier.receipt",
    "TurnController": "src.cashier.controller",
    "TurnState": "src.cashier.controller",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(name)
    return getattr(import_module(module), name)
