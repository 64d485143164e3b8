"""Receipt page for the user redirect and the plain acknowledgement for callbacks."""

import json
from html import escape
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi.responses import HTMLResponse, PlainTextResponse

from billrelay.models.events import EventParams
from billrelay.models.order import Order, OrderStatus
from billrelay.services.money import format_cents, normalize_amount
from billrelay.services.status import map_status

ACK_BODY = "OK"
RETRY_BODY = "FAIL"

_LABELS = {
    OrderStatus.PAID: ("ok", "BERJAYA"),
    OrderStatus.FAILED: ("fail", "GAGAL"),
}
_PENDING_LABEL = ("pending", "PENDING / TIDAK PASTI")

_PAGE = """<!doctype html>
<html lang="ms"><meta charset="utf-8" />
<title>Resit / Return</title>
<meta name="viewport" content="width=device-width,initial-scale=1" />
<style>
 body{{font-family:system-ui,Arial,sans-serif;max-width:680px;margin:24px auto;padding:16px}}
 .card{{border:1px solid #eee;border-radius:12px;padding:16px;box-shadow:0 2px 8px rgba(0,0,0,.05)}}
 .ok{{color:#0a7}}.fail{{color:#c00}}.pending{{color:#555}}
 pre{{background:#fafafa;border:1px solid #eee;padding:12px;border-radius:8px;overflow:auto}}
 a.btn{{display:inline-block;margin-top:12px;padding:10px 14px;border-radius:8px;border:1px solid #ddd;text-decoration:none}}
</style>
<h2>Maklumbalas Pembayaran</h2>
<div class="card">
  <p><strong>Status:</strong> <span class="{css_class}">{label}</span></p>
  <p><strong>Billcode:</strong> {bill_code}</p>
  <p><strong>Order ID:</strong> {order_id}</p>
  <p><strong>Amount:</strong> {amount}</p>
</div>
<h3>Semua Parameter</h3>
<pre>{params}</pre>
{buttons}
</html>"""


def build_app_link(app_return_url: str, order_id: str | None, status: OrderStatus) -> str:
    """Deep link back into the mobile app, carrying the outcome as query parameters."""
    parts = urlsplit(app_return_url)
    query = {"status": status.value}
    if order_id:
        query["order_id"] = order_id
    extra = urlencode(query)
    merged = f"{parts.query}&{extra}" if parts.query else extra
    return urlunsplit((parts.scheme, parts.netloc, parts.path, merged, parts.fragment))


def render_return_page(params: EventParams, order: Order | None, app_return_url: str = "") -> HTMLResponse:
    # Stored fields win over the redirect's query string when the store answered.
    if order is not None:
        status = order.status
        bill_code = order.bill_code or params.bill_code
        order_id = order.order_id
        amount = format_cents(order.amount_cents)
    else:
        status = map_status(params.status_id)
        bill_code = params.bill_code
        order_id = params.order_id
        amount = format_cents(normalize_amount(params.amount))
    css_class, label = _LABELS.get(status, _PENDING_LABEL)

    buttons = ['<a class="btn" href="/">Kembali</a>']
    if app_return_url:
        link = build_app_link(app_return_url, order_id, status)
        buttons.insert(0, f'<a class="btn" href="{escape(link)}">Kembali ke aplikasi</a>')

    html = _PAGE.format(
        css_class=css_class,
        label=label,
        bill_code=escape(bill_code or ""),
        order_id=escape(order_id or ""),
        amount=escape(amount or params.amount or ""),
        params=escape(json.dumps(params.raw, indent=2, ensure_ascii=False, default=str)),
        buttons="\n".join(buttons),
    )
    return HTMLResponse(html)


def acknowledge() -> PlainTextResponse:
    """Exactly "OK": anything else makes ToyyibPay retry the callback."""
    return PlainTextResponse(ACK_BODY)


def retry_later() -> PlainTextResponse:
    return PlainTextResponse(RETRY_BODY, status_code=503)
