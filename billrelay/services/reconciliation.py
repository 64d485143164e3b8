"""
Order reconciliation: merges pre-registration, return-sync and callback events
into a single order record.

Events may arrive out of order, more than once, or with fields missing. Each is
resolved against the store (order_id, then bill_code, then a new row) and merged
with a keyed upsert, so re-delivering an event leaves the order unchanged apart
from updated_at.
"""

from typing import Any, NamedTuple

from billrelay.core.exceptions import NotFoundError, StoreError
from billrelay.core.logging import get_logger
from billrelay.models.events import EventParams, OrderStatusView, PreRegistration
from billrelay.models.order import AMOUNT_MISMATCH_SUFFIX, TERMINAL_STATUSES, Order, OrderStatus
from billrelay.services.money import format_cents, normalize_amount
from billrelay.services.order_store import OrderStore
from billrelay.services.status import map_status

log = get_logger(__name__)

SOURCE_RETURN = "return"
SOURCE_CALLBACK = "callback"


class ReturnOutcome(NamedTuple):
    order: Order | None
    stored: bool


class Reconciler:
    def __init__(self, store: OrderStore, lock_terminal_status: bool = True):
        self.store = store
        self.lock_terminal_status = lock_terminal_status

    async def pre_register(self, request: PreRegistration) -> Order:
        """Pre-registration is authoritative for amount, currency and payer fields."""
        order = await self.store.upsert_pre_register(
            request.order_id,
            request.amount_cents,
            currency=request.currency.upper() if request.currency else None,
            payer_name=request.payer_name,
            payer_email=request.payer_email,
            payer_phone=request.payer_phone,
            bill_code=request.bill_code,
            raw_payload=request.model_dump(exclude_none=True),
        )
        log.info(
            "order_pre_registered",
            order_id=order.order_id,
            amount_cents=order.amount_cents,
            status=order.status.value,
        )
        return order

    async def sync_return(self, params: EventParams) -> ReturnOutcome:
        """Best-effort update from the user redirect. Store failures never reach the user."""
        try:
            order = await self.apply_event(params, SOURCE_RETURN)
        except StoreError as exc:
            log.warning("return_sync_failed", order_id=params.order_id, bill_code=params.bill_code, error=exc.message)
            return ReturnOutcome(order=None, stored=False)
        return ReturnOutcome(order=order, stored=order is not None)

    async def handle_callback(self, params: EventParams) -> Order | None:
        """Authoritative server callback. StoreError propagates so the gateway retries."""
        log.info("callback_received", payload=params.raw)
        return await self.apply_event(params, SOURCE_CALLBACK)

    async def apply_event(self, params: EventParams, source: str) -> Order | None:
        if not params.has_key:
            log.warning("event_without_keys", source=source, status_id=params.status_id)
            return None

        status = map_status(params.status_id)
        amount_cents = normalize_amount(params.amount)
        fields: dict[str, Any] = {
            "status": status.value,
            "status_id": params.status_id,
            "status_detail": status.value,
            "status_source": source,
            "raw_payload": params.raw,
        }
        if amount_cents is not None:
            fields["amount_cents"] = amount_cents
        if params.bill_code:
            fields["bill_code"] = params.bill_code
        if params.transaction_id:
            fields["transaction_id"] = params.transaction_id

        existing = (await self.store.resolve(params.order_id, params.bill_code)).order
        if existing is not None:
            self._flag_amount_mismatch(existing, status, amount_cents, fields, source)
            self._hold_terminal_status(existing, status, fields, source)

        resolution = await self.store.merge_status_update(params.order_id, params.bill_code, fields)
        if resolution.matched:
            order = resolution.order
        else:
            order = await self.store.insert_if_absent(params.order_id, fields)
        log.info(
            "order_reconciled",
            source=source,
            order_id=order.order_id,
            resolution=resolution.kind.value,
            status=order.status.value,
            status_detail=order.status_detail,
        )
        return order

    def _flag_amount_mismatch(
        self,
        existing: Order,
        status: OrderStatus,
        amount_cents: int | None,
        fields: dict[str, Any],
        source: str,
    ) -> None:
        # A confirmed nonzero amount is never replaced by an event; mismatches are annotated, not rejected.
        if not existing.amount_cents or amount_cents is None or amount_cents == existing.amount_cents:
            return
        fields.pop("amount_cents", None)
        if amount_cents == 0:
            return
        log.warning(
            "amount_mismatch",
            source=source,
            order_id=existing.order_id,
            stored_amount_cents=existing.amount_cents,
            reported_amount_cents=amount_cents,
        )
        fields["status_detail"] = status.value + AMOUNT_MISMATCH_SUFFIX

    def _hold_terminal_status(
        self,
        existing: Order,
        status: OrderStatus,
        fields: dict[str, Any],
        source: str,
    ) -> None:
        if status == existing.status:
            # A redirect repeating a callback's status does not downgrade its source.
            if existing.status_source == SOURCE_CALLBACK:
                fields["status_source"] = SOURCE_CALLBACK
            return
        # Only a callback establishes a terminal status; a redirect can be forged by anyone.
        if (
            self.lock_terminal_status
            and existing.status in TERMINAL_STATUSES
            and existing.status_source == SOURCE_CALLBACK
        ):
            log.warning(
                "terminal_status_locked",
                source=source,
                order_id=existing.order_id,
                current_status=existing.status.value,
                reported_status=status.value,
            )
            for key in ("status", "status_id", "status_detail", "status_source"):
                fields.pop(key, None)
            return
        if existing.status == OrderStatus.PAID and existing.status_source != SOURCE_CALLBACK:
            # paid_at from an unconfirmed redirect is provisional.
            fields["paid_at"] = None

    async def order_status(self, order_id: str) -> OrderStatusView:
        order = await self.store.find_by_order_id(order_id)
        if not order:
            raise NotFoundError("Order not found")
        return OrderStatusView(
            order_id=order.order_id,
            bill_code=order.bill_code,
            amount_cents=order.amount_cents,
            amount=format_cents(order.amount_cents),
            status_id=order.status_id,
            status=order.status,
            paid=order.is_paid,
            paid_at=order.paid_at,
        )
