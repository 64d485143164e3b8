"""ToyyibPay status codes: 1 = success, 2 = pending, 3 = failed."""

from billrelay.models.order import OrderStatus

_CODES = {
    "1": OrderStatus.PAID,
    "3": OrderStatus.FAILED,
}


def map_status(code: str | None) -> OrderStatus:
    # Unknown codes degrade to PENDING rather than failing the event.
    return _CODES.get(code or "", OrderStatus.PENDING)
