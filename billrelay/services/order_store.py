"""MongoDB-backed order records. Every write is a single-document atomic update."""

from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterator, NamedTuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from billrelay.core.exceptions import StoreError
from billrelay.core.logging import get_logger
from billrelay.models.order import Order, OrderStatus, utcnow

log = get_logger(__name__)


class ResolutionKind(str, Enum):
    MATCHED_BY_ORDER_ID = "matched_by_order_id"
    MATCHED_BY_BILL_CODE = "matched_by_bill_code"
    NOT_FOUND = "not_found"


class Resolution(NamedTuple):
    kind: ResolutionKind
    order: Order | None = None

    @property
    def matched(self) -> bool:
        return self.kind != ResolutionKind.NOT_FOUND


NOT_FOUND = Resolution(ResolutionKind.NOT_FOUND)


def placeholder_order_id(now: datetime) -> str:
    return now.strftime("AUTO-%Y%m%d%H%M%S%f")


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        log.error("store_error", operation=operation, error=str(exc))
        raise StoreError(details={"operation": operation}) from exc


class OrderStore:
    """
    Order persistence keyed by order_id (unique) with bill_code as fallback key.
    created_at, updated_at and paid_at come from this store's clock.
    """

    def __init__(self, default_currency: str = "MYR", clock: Callable[[], datetime] = utcnow):
        self.default_currency = default_currency
        self._clock = clock

    async def find_by_order_id(self, order_id: str) -> Order | None:
        with _store_errors("find_by_order_id"):
            return await Order.find_one(Order.order_id == order_id)

    async def find_by_bill_code(self, bill_code: str) -> Order | None:
        with _store_errors("find_by_bill_code"):
            return await Order.find(Order.bill_code == bill_code).sort(-Order.updated_at).first_or_none()

    async def resolve(self, order_id: str | None, bill_code: str | None) -> Resolution:
        """Read-only lookup: order_id first, then bill_code."""
        if order_id:
            order = await self.find_by_order_id(order_id)
            if order:
                return Resolution(ResolutionKind.MATCHED_BY_ORDER_ID, order)
        if bill_code:
            order = await self.find_by_bill_code(bill_code)
            if order:
                return Resolution(ResolutionKind.MATCHED_BY_BILL_CODE, order)
        return NOT_FOUND

    async def upsert_pre_register(
        self,
        order_id: str,
        amount_cents: int,
        currency: str | None = None,
        payer_name: str | None = None,
        payer_email: str | None = None,
        payer_phone: str | None = None,
        bill_code: str | None = None,
        raw_payload: dict[str, Any] | None = None,
    ) -> Order:
        """Insert as REGISTERED, or overwrite amount/currency/payer on an existing row. Status is untouched."""
        now = self._clock()
        set_fields: dict[str, Any] = {
            "amount_cents": amount_cents,
            "currency": currency or self.default_currency,
            "payer_name": payer_name,
            "payer_email": payer_email,
            "payer_phone": payer_phone,
            "raw_payload": raw_payload or {},
            "updated_at": now,
        }
        on_insert: dict[str, Any] = {
            "order_id": order_id,
            "status": OrderStatus.REGISTERED.value,
            "status_detail": OrderStatus.REGISTERED.value,
            "status_source": None,
            "status_id": None,
            "transaction_id": None,
            "created_at": now,
        }
        if bill_code:
            set_fields["bill_code"] = bill_code
        else:
            on_insert["bill_code"] = None
        with _store_errors("upsert_pre_register"):
            await Order.get_motor_collection().update_one(
                {"order_id": order_id},
                {"$set": set_fields, "$setOnInsert": on_insert},
                upsert=True,
            )
        order = await self.find_by_order_id(order_id)
        if order is None:
            raise StoreError("Pre-registered order vanished", details={"order_id": order_id})
        return order

    async def merge_status_update(
        self,
        order_id: str | None,
        bill_code: str | None,
        fields: dict[str, Any],
    ) -> Resolution:
        """Apply a partial update to the row matched by order_id, else the newest row with bill_code."""
        now = self._clock()
        with _store_errors("merge_status_update"):
            if order_id:
                order = await self._update_row({"order_id": order_id}, fields, now)
                if order:
                    return Resolution(ResolutionKind.MATCHED_BY_ORDER_ID, order)
            if bill_code:
                target = await Order.get_motor_collection().find_one(
                    {"bill_code": bill_code},
                    projection={"_id": 1},
                    sort=[("updated_at", DESCENDING)],
                )
                if target:
                    order = await self._update_row({"_id": target["_id"]}, fields, now)
                    if order:
                        return Resolution(ResolutionKind.MATCHED_BY_BILL_CODE, order)
        return NOT_FOUND

    async def _update_row(self, key: dict[str, Any], fields: dict[str, Any], now: datetime) -> Order | None:
        collection = Order.get_motor_collection()
        update = {**fields, "updated_at": now}
        doc = None
        if fields.get("status") == OrderStatus.PAID.value:
            # Status and the first paid_at land in one write.
            doc = await collection.find_one_and_update(
                {**key, "paid_at": None},
                {"$set": {**update, "paid_at": now}},
                projection={"_id": 1},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            doc = await collection.find_one_and_update(
                key,
                {"$set": update},
                projection={"_id": 1},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            return None
        return await Order.get(doc["_id"])

    async def insert_if_absent(self, order_id: str | None, fields: dict[str, Any]) -> Order:
        """
        Create the row a status event refers to. Keyed upsert, so a concurrent
        duplicate merges instead of producing a second row.
        """
        now = self._clock()
        order_id = order_id or placeholder_order_id(now)
        defaults: dict[str, Any] = {
            "order_id": order_id,
            "bill_code": None,
            "amount_cents": None,
            "currency": self.default_currency,
            "status": OrderStatus.PENDING.value,
            "status_id": None,
            "status_detail": OrderStatus.PENDING.value,
            "status_source": None,
            "transaction_id": None,
            "payer_name": None,
            "payer_email": None,
            "payer_phone": None,
            "raw_payload": {},
            "paid_at": now if fields.get("status") == OrderStatus.PAID.value else None,
            "created_at": now,
        }
        on_insert = {k: v for k, v in defaults.items() if k not in fields}
        with _store_errors("insert_if_absent"):
            result = await Order.get_motor_collection().update_one(
                {"order_id": order_id},
                {"$setOnInsert": {**on_insert, **fields, "updated_at": now}},
                upsert=True,
            )
        if result.upserted_id is None:
            # Lost a race with a concurrent insert: merge into the winner instead.
            resolution = await self.merge_status_update(order_id, None, fields)
            if resolution.order is None:
                raise StoreError("Order vanished during insert", details={"order_id": order_id})
            return resolution.order
        order = await self.find_by_order_id(order_id)
        if order is None:
            raise StoreError("Inserted order vanished", details={"order_id": order_id})
        log.info("order_created", order_id=order_id, status=order.status.value)
        return order

    async def ping(self) -> None:
        with _store_errors("ping"):
            await Order.get_motor_collection().database.command("ping")
