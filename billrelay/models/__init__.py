from billrelay.models.order import Order, OrderStatus
from billrelay.models.events import EventParams, OrderStatusView, PreRegistration

__all__ = [
    "Order",
    "OrderStatus",
    "EventParams",
    "OrderStatusView",
    "PreRegistration",
]
