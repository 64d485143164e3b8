from datetime import datetime, timezone
from enum import Enum
from typing import Any

from beanie import Document, Indexed
from pydantic import Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    REGISTERED = "REGISTERED"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.FAILED})

AMOUNT_MISMATCH_SUFFIX = "_AMOUNT_MISMATCH"


class Order(Document):
    """One row per merchant order; merged from pre-registration, return-sync and callbacks."""
    order_id: Indexed(str, unique=True)
    bill_code: str | None = None  # assigned by ToyyibPay once the bill exists
    amount_cents: int | None = None  # None = not yet known
    currency: str = "MYR"
    status: OrderStatus = OrderStatus.PENDING
    status_id: str | None = None  # raw gateway code last applied
    status_detail: str = OrderStatus.PENDING.value
    status_source: str | None = None  # "callback" or "return"; only callbacks lock a terminal status
    transaction_id: str | None = None
    payer_name: str | None = None
    payer_email: str | None = None
    payer_phone: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    paid_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "orders"
        indexes = [
            [("bill_code", 1)],
            [("status", 1)],
        ]

    @property
    def is_paid(self) -> bool:
        return self.status == OrderStatus.PAID or self.paid_at is not None
