import os
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient

# Settings are read once and cached; set them before the app is imported.
os.environ["MONGODB_URI"] = os.environ.get("TEST_MONGODB_URI", "mongodb://localhost:27017")
os.environ["MONGODB_DB_NAME"] = "billrelay_test"
os.environ["TOYYIB_CALLBACK_SECRET"] = "test-callback-secret"
os.environ["ORDERS_API_TOKEN"] = ""
os.environ["APP_RETURN_URL"] = "myapp://payment/result"

from billrelay.core.config import get_settings  # noqa: E402
from billrelay.core.exceptions import StoreError  # noqa: E402
from billrelay.main import app  # noqa: E402
from billrelay.models.order import Order, OrderStatus  # noqa: E402
from billrelay.services.order_store import (  # noqa: E402
    NOT_FOUND,
    OrderStore,
    Resolution,
    ResolutionKind,
    placeholder_order_id,
)

# capture_logs only sees loggers that have not been cached yet.
structlog.configure(cache_logger_on_first_use=False)

CALLBACK_SECRET = "test-callback-secret"


class InMemoryOrderStore(OrderStore):
    """Dict-backed stand-in with the same merge rules as the Mongo store."""

    def __init__(self, default_currency: str = "MYR"):
        self._tick = datetime(2026, 1, 1, tzinfo=timezone.utc)
        super().__init__(default_currency=default_currency, clock=self._next_time)
        self.rows: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []
        self.fail = False

    def _next_time(self) -> datetime:
        self._tick += timedelta(seconds=1)
        return self._tick

    def _touch(self, operation: str) -> None:
        self.calls.append(operation)
        if self.fail:
            raise StoreError(details={"operation": operation})

    @staticmethod
    def _order(row: dict[str, Any]) -> Order:
        return Order.model_construct(**{**row, "status": OrderStatus(row["status"])})

    async def find_by_order_id(self, order_id: str) -> Order | None:
        self._touch("find_by_order_id")
        row = self.rows.get(order_id)
        return self._order(row) if row else None

    async def find_by_bill_code(self, bill_code: str) -> Order | None:
        self._touch("find_by_bill_code")
        matches = [r for r in self.rows.values() if r.get("bill_code") == bill_code]
        if not matches:
            return None
        return self._order(max(matches, key=lambda r: r["updated_at"]))

    async def upsert_pre_register(
        self,
        order_id,
        amount_cents,
        currency=None,
        payer_name=None,
        payer_email=None,
        payer_phone=None,
        bill_code=None,
        raw_payload=None,
    ) -> Order:
        self._touch("upsert_pre_register")
        now = self._clock()
        row = self.rows.setdefault(
            order_id,
            {
                "order_id": order_id,
                "bill_code": None,
                "status": OrderStatus.REGISTERED.value,
                "status_detail": OrderStatus.REGISTERED.value,
                "status_source": None,
                "status_id": None,
                "transaction_id": None,
                "paid_at": None,
                "created_at": now,
            },
        )
        row.update(
            amount_cents=amount_cents,
            currency=currency or self.default_currency,
            payer_name=payer_name,
            payer_email=payer_email,
            payer_phone=payer_phone,
            raw_payload=raw_payload or {},
            updated_at=now,
        )
        if bill_code:
            row["bill_code"] = bill_code
        return self._order(row)

    def _apply(self, row: dict[str, Any], fields: dict[str, Any]) -> Order:
        now = self._clock()
        row.update(fields, updated_at=now)
        if row.get("status") == OrderStatus.PAID.value and row.get("paid_at") is None:
            row["paid_at"] = now
        return self._order(row)

    async def merge_status_update(self, order_id, bill_code, fields) -> Resolution:
        self._touch("merge_status_update")
        if order_id and order_id in self.rows:
            return Resolution(ResolutionKind.MATCHED_BY_ORDER_ID, self._apply(self.rows[order_id], fields))
        matches = [r for r in self.rows.values() if bill_code and r.get("bill_code") == bill_code]
        if matches:
            row = max(matches, key=lambda r: r["updated_at"])
            return Resolution(ResolutionKind.MATCHED_BY_BILL_CODE, self._apply(row, fields))
        return NOT_FOUND

    async def insert_if_absent(self, order_id, fields) -> Order:
        self._touch("insert_if_absent")
        now = self._clock()
        order_id = order_id or placeholder_order_id(now)
        row = self.rows.setdefault(
            order_id,
            {
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
                "paid_at": None,
                "created_at": now,
            },
        )
        return self._apply(row, fields)

    async def ping(self) -> None:
        self._touch("ping")


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def settings_env(monkeypatch):
    """Change settings for one test; the cache is rebuilt on both sides."""

    def apply(**env: str) -> None:
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        get_settings.cache_clear()

    yield apply
    monkeypatch.undo()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def client(store: InMemoryOrderStore) -> AsyncGenerator[AsyncClient, None]:
    app.state.order_store = store
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    del app.state.order_store
