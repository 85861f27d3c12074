"""
Order persistence.

Turns receipts into stored orders. Two backends:
- InMemoryOrderStore: local runs and tests
- SupabaseOrderStore: Supabase PostgREST over httpx

Both raise PersistenceError on failure. Callers treat that as non-fatal.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx
import structlog

from src.cashier.config import get_config
from src.cashier.receipt import OrderReceipt, ReceiptItem, to_cents

logger = structlog.get_logger(__name__)

# Concurrent creators can race for the same order number.
_MAX_NUMBER_ATTEMPTS = 3


class PersistenceError(Exception):
    """Raised when an order cannot be saved or updated."""
    pass


class OrderStatus(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class SavedOrder:
    order_id: str
    order_number: int


@dataclass
class StoredAddOn:
    name: str
    qty: int
    unit_price: Decimal


@dataclass
class StoredOrderItem:
    id: str
    order_id: str
    item_name: str
    size: Optional[str]
    temp: Optional[str]
    milk: Optional[str]
    sweetness: Optional[str]
    ice_level: Optional[str]
    add_ons: List[StoredAddOn]
    item_price: Decimal
    special_instructions: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StoredOrderItem":
        return cls(
            id=str(row["id"]),
            order_id=str(row["order_id"]),
            item_name=row["item_name"],
            size=row.get("size"),
            temp=row.get("temp"),
            milk=row.get("milk"),
            sweetness=row.get("sweetness", "regular"),
            ice_level=row.get("ice_level", "regular"),
            add_ons=[
                StoredAddOn(
                    name=a["name"],
                    qty=int(a.get("qty", 1)),
                    unit_price=to_cents(Decimal(str(a.get("unit_price", 0)))),
                )
                for a in (row.get("add_ons") or [])
            ],
            item_price=to_cents(Decimal(str(row["item_price"]))),
            special_instructions=row.get("special_instructions"),
        )


@dataclass
class StoredOrder:
    id: str
    order_number: int
    customer_name: Optional[str]
    status: OrderStatus
    total_price: Decimal
    created_at: str
    items: List[StoredOrderItem] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StoredOrder":
        return cls(
            id=str(row["id"]),
            order_number=int(row["order_number"]),
            customer_name=row.get("customer_name"),
            status=OrderStatus(row.get("status", "new")),
            total_price=to_cents(Decimal(str(row["total_price"]))),
            created_at=str(row.get("created_at", "")),
            items=[StoredOrderItem.from_row(r) for r in (row.get("order_items") or [])],
        )


class ChangeKind(str, Enum):
    ORDER_INSERTED = "order_inserted"
    ORDER_UPDATED = "order_updated"
    ITEM_INSERTED = "item_inserted"


@dataclass
class OrderChange:
    """A change notification, shaped like a database change feed event."""
    kind: ChangeKind
    order: Optional[StoredOrder] = None
    item: Optional[StoredOrderItem] = None


def item_rows(order_id: str, items: List[ReceiptItem]) -> List[Dict[str, Any]]:
    """Map receipt items to order_items rows (add-on `price` becomes `unit_price`)."""
    return [
        {
            "order_id": order_id,
            "item_name": item.item_name,
            "size": item.size,
            "temp": item.temp,
            "milk": item.milk,
            "sweetness": item.sweetness,
            "ice_level": item.ice_level,
            "add_ons": [
                {"name": a.name, "qty": a.qty, "unit_price": float(a.price)}
                for a in item.add_ons
            ],
            "item_price": float(item.item_price),
            "special_instructions": item.special_instructions,
        }
        for item in items
    ]


def merge_order_change(orders: List[StoredOrder], change: OrderChange) -> List[StoredOrder]:
    """
    Apply a change notification to a list of orders.

    Orders are replaced or inserted by id, item inserts are deduplicated by
    item id, and the result is ordered by creation time. Returns a new list.
    """
    merged = list(orders)

    if change.kind in (ChangeKind.ORDER_INSERTED, ChangeKind.ORDER_UPDATED) and change.order:
        incoming = change.order
        for i, existing in enumerate(merged):
            if existing.id == incoming.id:
                merged[i] = incoming
                break
        else:
            merged.append(incoming)

    elif change.kind == ChangeKind.ITEM_INSERTED and change.item:
        item = change.item
        for i, existing in enumerate(merged):
            if existing.id != item.order_id:
                continue
            if any(known.id == item.id for known in existing.items):
                break
            merged[i] = replace(existing, items=[*existing.items, item])
            break

    merged.sort(key=lambda o: o.created_at)
    return merged


class OrderStore(ABC):
    """Persistence gateway for orders."""

    @abstractmethod
    async def create_order(self, receipt: OrderReceipt) -> SavedOrder:
        raise NotImplementedError

    @abstractmethod
    async def update_order(self, order_id: str, items: List[ReceiptItem], total_price: Decimal) -> None:
        """Replace every line item and the total; identity and number stay."""
        raise NotImplementedError

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[StoredOrder]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryOrderStore(OrderStore):
    """Process-local order store with change notifications."""

    def __init__(self) -> None:
        self._orders: Dict[str, StoredOrder] = {}
        self._lock = asyncio.Lock()
        self._listeners: List[Callable[[OrderChange], None]] = []

    def subscribe(self, listener: Callable[[OrderChange], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, change: OrderChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.warning("Order listener failed", error=str(e), kind=change.kind.value)

    def _build_items(self, order_id: str, items: List[ReceiptItem]) -> List[StoredOrderItem]:
        return [
            StoredOrderItem.from_row({"id": uuid.uuid4().hex, **row})
            for row in item_rows(order_id, items)
        ]

    async def create_order(self, receipt: OrderReceipt) -> SavedOrder:
        async with self._lock:
            order_number = max((o.order_number for o in self._orders.values()), default=0) + 1
            order_id = str(uuid.uuid4())
            order = StoredOrder(
                id=order_id,
                order_number=order_number,
                customer_name=receipt.customer_name,
                status=OrderStatus.NEW,
                total_price=to_cents(receipt.total_price),
                created_at=_now_iso(),
                items=self._build_items(order_id, receipt.items),
            )
            self._orders[order_id] = order

        logger.info("Order created", order_id=order_id, order_number=order_number, items=len(order.items))
        self._publish(OrderChange(kind=ChangeKind.ORDER_INSERTED, order=order))
        return SavedOrder(order_id=order_id, order_number=order_number)

    async def update_order(self, order_id: str, items: List[ReceiptItem], total_price: Decimal) -> None:
        async with self._lock:
            existing = self._orders.get(order_id)
            if existing is None:
                raise PersistenceError(f"Order {order_id} not found")
            order = replace(
                existing,
                total_price=to_cents(total_price),
                items=self._build_items(order_id, items),
            )
            self._orders[order_id] = order

        logger.info("Order updated", order_id=order_id, order_number=order.order_number, items=len(order.items))
        self._publish(OrderChange(kind=ChangeKind.ORDER_UPDATED, order=order))

    async def get_order(self, order_id: str) -> Optional[StoredOrder]:
        return self._orders.get(order_id)

    async def list_orders(self) -> List[StoredOrder]:
        return sorted(self._orders.values(), key=lambda o: o.created_at)


class SupabaseOrderStore(OrderStore):
    """Orders in Supabase (tables `orders` and `order_items`) via PostgREST."""

    def __init__(
        self,
        config: Optional[Any] = None,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_config()
        self._client = httpx.AsyncClient(
            base_url=f"{self.config.supabase_url.rstrip('/')}/rest/v1",
            headers={
                "apikey": self.config.supabase_key,
                "Authorization": f"Bearer {self.config.supabase_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise PersistenceError(f"Supabase request failed: {e}") from e

    @staticmethod
    def _check(response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            logger.warning(
                "Supabase error",
                action=action,
                status_code=response.status_code,
                response=response.text[:200],
            )
            raise PersistenceError(f"Failed to {action}: HTTP {response.status_code}")

    async def _next_order_number(self) -> int:
        response = await self._request(
            "GET",
            "/orders",
            params={"select": "order_number", "order": "order_number.desc", "limit": "1"},
        )
        self._check(response, "read latest order number")
        rows = response.json()
        latest = rows[0]["order_number"] if rows else 0
        return int(latest) + 1

    async def _insert_items(self, order_id: str, items: List[ReceiptItem]) -> None:
        if not items:
            return
        response = await self._request(
            "POST",
            "/order_items",
            json=item_rows(order_id, items),
            headers={"Prefer": "return=minimal"},
        )
        self._check(response, "insert order items")

    async def create_order(self, receipt: OrderReceipt) -> SavedOrder:
        order_row: Optional[Dict[str, Any]] = None

        for attempt in range(1, _MAX_NUMBER_ATTEMPTS + 1):
            order_number = await self._next_order_number()
            response = await self._request(
                "POST",
                "/orders",
                json={
                    "order_number": order_number,
                    "customer_name": receipt.customer_name,
                    "status": OrderStatus.NEW.value,
                    "total_price": float(to_cents(receipt.total_price)),
                },
                headers={"Prefer": "return=representation"},
            )
            if response.status_code == 409:
                logger.info("Order number taken, retrying", order_number=order_number, attempt=attempt)
                continue
            self._check(response, "create order")
            rows = response.json()
            order_row = rows[0] if isinstance(rows, list) else rows
            break

        if not order_row:
            raise PersistenceError("Failed to create order: could not allocate an order number")

        order_id = str(order_row["id"])
        try:
            await self._insert_items(order_id, receipt.items)
        except PersistenceError:
            await self._rollback_order(order_id)
            raise

        saved = SavedOrder(order_id=order_id, order_number=int(order_row["order_number"]))
        logger.info("Order created", order_id=saved.order_id, order_number=saved.order_number, items=len(receipt.items))
        return saved

    async def _rollback_order(self, order_id: str) -> None:
        try:
            response = await self._request("DELETE", "/orders", params={"id": f"eq.{order_id}"})
            self._check(response, "roll back order")
        except PersistenceError as e:
            logger.error("Order rollback failed", order_id=order_id, error=str(e))

    async def update_order(self, order_id: str, items: List[ReceiptItem], total_price: Decimal) -> None:
        response = await self._request(
            "PATCH",
            "/orders",
            params={"id": f"eq.{order_id}"},
            json={"total_price": float(to_cents(total_price))},
            headers={"Prefer": "return=representation"},
        )
        self._check(response, "update order")
        if not response.json():
            raise PersistenceError(f"Order {order_id} not found")

        response = await self._request(
            "DELETE",
            "/order_items",
            params={"order_id": f"eq.{order_id}"},
            headers={"Prefer": "return=representation"},
        )
        self._check(response, "delete order items")
        removed = response.json() if response.content else []

        try:
            await self._insert_items(order_id, items)
        except PersistenceError:
            await self._restore_items(order_id, removed)
            raise
        logger.info("Order updated", order_id=order_id, items=len(items))

    async def _restore_items(self, order_id: str, rows: List[Dict[str, Any]]) -> None:
        """Put back the item rows removed by a failed update."""
        if not rows:
            logger.error("Order left without items after failed update", order_id=order_id)
            return
        try:
            response = await self._request(
                "POST",
                "/order_items",
                json=rows,
                headers={"Prefer": "return=minimal"},
            )
            self._check(response, "restore order items")
        except PersistenceError as e:
            logger.error("Order items restore failed", order_id=order_id, items=len(rows), error=str(e))
            return
        logger.warning("Order items restored after failed update", order_id=order_id, items=len(rows))

    async def get_order(self, order_id: str) -> Optional[StoredOrder]:
        response = await self._request(
            "GET",
            "/orders",
            params={"id": f"eq.{order_id}", "select": "*,order_items(*)"},
        )
        self._check(response, "read order")
        rows = response.json()
        if not rows:
            return None
        return StoredOrder.from_row(rows[0])

    async def close(self) -> None:
        await self._client.aclose()


def create_order_store(config: Optional[Any] = None) -> OrderStore:
    config = config or get_config()
    store = (config.order_store or "memory").strip().lower()

    if store == "supabase":
        return SupabaseOrderStore(config)
    if store == "memory":
        return InMemoryOrderStore()

    raise ValueError(f"Unsupported ORDER_STORE: {config.order_store}")


# Singleton instance
_store_instance: Optional[OrderStore] = None


def get_order_store() -> OrderStore:
    """Get or create the process-wide order store."""
    global _store_instance

    if _store_instance is None:
        _store_instance = create_order_store()

    return _store_instance


async def close_order_store() -> None:
    global _store_instance

    if _store_instance is not None:
        await _store_instance.close()
        _store_instance = None
