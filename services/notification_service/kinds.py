"""Notification kinds and the per-kind facts every other module relies on."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from shared.schemas import OrderItemSnapshot, OrderStatus


class NotificationKind(str, Enum):
    """Every message the pipeline can send. Closed set."""
    CONFIRMED = "confirmed"
    CONFIRMED_RETRY = "confirmed-retry"
    PROCESSING = "processing"
    PACKED = "packed"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FOLLOW_UP = "follow_up"

    @property
    def category(self) -> str:
        """Provider-side analytics tag."""
        return f"order-{self.value}"

    @property
    def sends_sms(self) -> bool:
        return self in SMS_KINDS


SMS_KINDS = frozenset({
    NotificationKind.SHIPPED,
    NotificationKind.OUT_FOR_DELIVERY,
    NotificationKind.DELIVERED,
})

# Kinds that may sit in the delayed queue for an order; cancelling an order
# clears all of them.
SCHEDULED_KINDS = frozenset({
    NotificationKind.CONFIRMED_RETRY,
    NotificationKind.PROCESSING,
    NotificationKind.FOLLOW_UP,
})

STATUS_KIND: Dict[OrderStatus, NotificationKind] = {
    OrderStatus.CONFIRMED: NotificationKind.CONFIRMED,
    OrderStatus.PROCESSING: NotificationKind.PROCESSING,
    OrderStatus.PACKED: NotificationKind.PACKED,
    OrderStatus.SHIPPED: NotificationKind.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY: NotificationKind.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED: NotificationKind.DELIVERED,
    OrderStatus.CANCELLED: NotificationKind.CANCELLED,
}

if set(STATUS_KIND) != set(OrderStatus):
    raise RuntimeError("STATUS_KIND must cover every OrderStatus")


class NotificationParams(BaseModel):
    """Kind-specific inputs for one message.

    ``items`` overrides the order's own item list (the order_items insert can
    lag the confirmation send). ``recipient`` is an address captured when the
    job was scheduled; when absent the address is resolved from the order.
    """
    items: Optional[List[OrderItemSnapshot]] = None
    tracking_number: Optional[str] = None
    courier: Optional[str] = None
    track_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    window_text: Optional[str] = None
    recipient: Optional[str] = None

    @classmethod
    def from_metadata(cls, metadata: Optional[Dict[str, Any]]) -> "NotificationParams":
        """Rebuild params stored in a job's JSON metadata."""
        return cls.model_validate(metadata or {})

    def to_metadata(self) -> Dict[str, Any]:
        """JSON-safe form, without unset fields."""
        return self.model_dump(mode="json", exclude_none=True)
