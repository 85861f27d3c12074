"""
Receipt extraction from cashier responses.

The model closes an order by appending a fenced JSON block to its reply:

    Perfect, Sarah! Here's your order.
    ```json
    {"type": "order_complete", "customer_name": "Sarah", "items": [...], "total_price": 6.50}
    ```

This module separates the spoken/display text from that structured payload.
Everything here is pure: no I/O, no logging side effects on the happy path.
"""

from __future__ import annotations

import json
import re
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import List, Literal, Optional, Tuple

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = structlog.get_logger(__name__)

_CENT = Decimal("0.01")

# A complete block. The non-greedy body must be followed by a closing fence, so
# nested braces inside the JSON are fine.
RECEIPT_BLOCK_RE = re.compile(r"```json\s*(\{[\s\S]*?\})\s*```")

# An opening fence that never closed (mid-stream): cut from here to the end.
_OPEN_FENCE_RE = re.compile(r"```")

# A fence marker still arriving at the very end of the text ("`", "``", "```js").
_DANGLING_FENCE_RE = re.compile(r"(?:^|\s)`{1,3}(?:j|js|jso|json)?\s*$")


def to_cents(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


class ReceiptKind(str, Enum):
    COMPLETE = "order_complete"
    UPDATE = "order_update"


class ReceiptAddOn(BaseModel):
    """One add-on line (e.g. an extra espresso shot) with its per-unit price."""

    name: str
    qty: int = Field(default=1, ge=1)
    price: Decimal = Decimal("0")

    @field_validator("price")
    @classmethod
    def _round_price(cls, value: Decimal) -> Decimal:
        return to_cents(value)


class ReceiptItem(BaseModel):
    """One drink or pastry on the receipt."""

    item_name: str
    size: Optional[str] = None
    temp: Optional[str] = None
    milk: Optional[str] = None
    sweetness: Optional[str] = "regular"
    ice_level: Optional[str] = "regular"
    add_ons: List[ReceiptAddOn] = Field(default_factory=list)
    item_price: Decimal
    special_instructions: Optional[str] = None

    @field_validator("item_price")
    @classmethod
    def _round_price(cls, value: Decimal) -> Decimal:
        return to_cents(value)


class OrderReceipt(BaseModel):
    """Structured order payload embedded in a cashier turn."""

    type: Literal["order_complete", "order_update"]
    customer_name: Optional[str] = None
    items: List[ReceiptItem]
    total_price: Decimal

    @field_validator("total_price")
    @classmethod
    def _round_total(cls, value: Decimal) -> Decimal:
        return to_cents(value)

    @property
    def kind(self) -> ReceiptKind:
        return ReceiptKind(self.type)

    @property
    def items_total(self) -> Decimal:
        """Sum of item prices, rounded to cents."""
        return to_cents(sum((item.item_price for item in self.items), Decimal("0")))

    @property
    def total_matches_items(self) -> bool:
        return self.items_total == self.total_price


def _strip_once(text: str) -> str:
    text = RECEIPT_BLOCK_RE.sub("", text)

    match = _OPEN_FENCE_RE.search(text)
    if match:
        text = text[: match.start()]

    text = _DANGLING_FENCE_RE.sub("", text)
    return text.strip()


def strip_receipt_block(text: str) -> str:
    """
    Remove the receipt block from `text`.

    Tolerates a block that is still streaming in (no closing fence yet, or a
    fence marker only partially received). Applying it to its own output is a
    no-op.
    """
    current = text or ""
    while True:
        stripped = _strip_once(current)
        if stripped == current:
            return stripped
        current = stripped


def parse_receipt(text: str) -> Optional[OrderReceipt]:
    """
    Parse the first complete receipt block in `text`.

    Returns None when there is no block, the JSON is malformed, required fields
    are missing, or `type` is not one of the two recognized kinds.
    """
    match = RECEIPT_BLOCK_RE.search(text or "")
    if not match:
        return None

    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        logger.warning("Receipt block is not valid JSON", error=str(e))
        return None

    if not isinstance(data, dict):
        return None

    try:
        return OrderReceipt.model_validate(data)
    except ValidationError as e:
        logger.warning(
            "Receipt block failed validation",
            receipt_type=data.get("type"),
            errors=e.error_count(),
        )
        return None


def extract_receipt(text: str) -> Tuple[str, Optional[OrderReceipt]]:
    """
    Split a finished cashier message into (display_text, receipt).

    Without a valid receipt the text is returned untouched so a malformed block
    is still visible rather than silently dropped.
    """
    receipt = parse_receipt(text)
    if receipt is None:
        return text, None
    return strip_receipt_block(text), receipt
