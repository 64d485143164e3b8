from datetime import datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from billrelay.models.order import OrderStatus

# Gateway parameter names, preferred first. The callback sends `status`/`refno`,
# the return redirect sends `status_id`/`transaction_id`.
_FIELD_NAMES = {
    "order_id": ("order_id",),
    "bill_code": ("billcode", "bill_code"),
    "status_id": ("status_id", "status"),
    "amount": ("amount",),
    "transaction_id": ("transaction_id", "refno"),
}


def _storable(value: Any) -> Any:
    """Copy a payload so every key is a string MongoDB accepts as a field name."""
    if isinstance(value, Mapping):
        clean: dict[str, Any] = {}
        for key, item in value.items():
            name = str(key).replace(".", "_")
            if name.startswith("$"):
                name = "_" + name[1:]
            clean[name] = _storable(item)
        return clean
    if isinstance(value, list):
        return [_storable(item) for item in value]
    return value


class EventParams(BaseModel):
    """Return-sync or callback parameters, normalized once regardless of query/form/JSON encoding."""

    order_id: str | None = None
    bill_code: str | None = None
    status_id: str | None = None
    amount: str | None = None
    transaction_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EventParams":
        values: dict[str, Any] = {}
        for field, names in _FIELD_NAMES.items():
            for name in names:
                value = data.get(name)
                if value is None or isinstance(value, (dict, list)):
                    continue
                text = str(value).strip()
                if text:
                    values[field] = text
                    break
        return cls(raw=_storable(data), **values)

    @property
    def has_key(self) -> bool:
        return bool(self.order_id or self.bill_code)


class PreRegistration(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    order_id: str = Field(min_length=1, max_length=128)
    amount_cents: int = Field(ge=0, strict=True)
    currency: str | None = Field(default=None, pattern=r"^[A-Za-z]{3}$")
    payer_name: str | None = None
    payer_phone: str | None = None
    payer_email: str | None = None
    bill_code: str | None = None


class OrderStatusView(BaseModel):
    order_id: str
    bill_code: str | None
    amount_cents: int | None
    amount: str | None
    status_id: str | None
    status: OrderStatus
    paid: bool
    paid_at: datetime | None
