"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from billrelay.core.config import get_settings
from billrelay.core.exceptions import StoreError, UnauthorizedError
from billrelay.core.logging import get_logger
from billrelay.core.security import bearer_token, verify_shared_secret
from billrelay.services.order_store import OrderStore
from billrelay.services.reconciliation import Reconciler

CALLBACK_TOKEN_HEADER = "X-Callback-Token"

log = get_logger(__name__)


def get_order_store(request: Request) -> OrderStore:
    """Dependency: the store built at startup. No I/O happens here."""
    store = getattr(request.app.state, "order_store", None)
    if store is None:
        raise StoreError("Order store not initialised")
    return store


def get_reconciler(store: OrderStore = Depends(get_order_store)) -> Reconciler:
    return Reconciler(store, lock_terminal_status=get_settings().lock_terminal_status)


async def require_callback_token(request: Request) -> None:
    """Dependency: shared secret from the path segment, a Bearer header or X-Callback-Token."""
    presented = (
        request.path_params.get("token")
        or bearer_token(request.headers.get("Authorization"))
        or request.headers.get(CALLBACK_TOKEN_HEADER)
    )
    if not verify_shared_secret(presented, get_settings().callback_secret):
        log.warning("callback_rejected")
        raise UnauthorizedError("Invalid callback token")


async def require_orders_token(request: Request) -> None:
    """Dependency: Bearer token for pre-registration, enforced only when configured."""
    expected = get_settings().orders_api_token
    if not expected:
        return
    if not verify_shared_secret(bearer_token(request.headers.get("Authorization")), expected):
        raise UnauthorizedError("Invalid API token")
