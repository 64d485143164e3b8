from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, PlainTextResponse

from billrelay.core.config import get_settings
from billrelay.core.exceptions import StoreError
from billrelay.core.logging import get_logger
from billrelay.deps import get_reconciler, require_callback_token
from billrelay.models.events import EventParams
from billrelay.services.reconciliation import Reconciler
from billrelay.services.responder import acknowledge, render_return_page, retry_later

router = APIRouter()
log = get_logger(__name__)


async def _read_body(request: Request) -> dict[str, Any]:
    if request.method in ("GET", "HEAD"):
        return {}
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = await request.json()
        except ValueError:
            log.warning("invalid_json_body", path=request.url.path)
            return {}
        return data if isinstance(data, dict) else {}
    if "form" in content_type:
        form = await request.form()
        return {k: v for k, v in form.items() if isinstance(v, str)}
    return {}


async def read_event_params(request: Request, prefer_body: bool) -> EventParams:
    """ToyyibPay sends the same fields as query string or body depending on the flow."""
    query = dict(request.query_params)
    body = await _read_body(request)
    data = (body or query) if prefer_body else (query or body)
    return EventParams.from_mapping(data)


@router.api_route("/return", methods=["GET", "POST"], response_class=HTMLResponse)
async def toyyib_return(request: Request, reconciler: Reconciler = Depends(get_reconciler)):
    """User redirect after payment: best-effort sync, then the receipt page."""
    params = await read_event_params(request, prefer_body=False)
    outcome = await reconciler.sync_return(params)
    return render_return_page(params, outcome.order, get_settings().app_return_url)


@router.post("/callback", response_class=PlainTextResponse, dependencies=[Depends(require_callback_token)])
@router.post("/callback/{token}", response_class=PlainTextResponse, dependencies=[Depends(require_callback_token)])
async def toyyib_callback(request: Request, reconciler: Reconciler = Depends(get_reconciler)):
    """Server-to-server callback. "OK" stops ToyyibPay retrying; FAIL asks for redelivery."""
    params = await read_event_params(request, prefer_body=True)
    try:
        await reconciler.handle_callback(params)
    except StoreError:
        return retry_later()
    return acknowledge()
