from fastapi import APIRouter, Depends

from billrelay.deps import get_reconciler, require_orders_token
from billrelay.models.events import OrderStatusView, PreRegistration
from billrelay.services.reconciliation import Reconciler

router = APIRouter()


@router.post("", dependencies=[Depends(require_orders_token)])
async def pre_register_order(
    body: PreRegistration,
    reconciler: Reconciler = Depends(get_reconciler),
):
    """Register an order before the bill is paid; repeat calls overwrite amount and payer details."""
    order = await reconciler.pre_register(body)
    return {"ok": True, "order_id": order.order_id}


@router.get("/{order_id}/status", response_model=OrderStatusView)
async def order_status(order_id: str, reconciler: Reconciler = Depends(get_reconciler)):
    return await reconciler.order_status(order_id)
