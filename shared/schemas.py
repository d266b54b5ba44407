"""Order snapshot models shared by the order and notification services."""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    """Fulfillment status of an order."""
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    PACKED = "packed"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ORDER_STATUS_LABEL: Dict[OrderStatus, str] = {
    OrderStatus.CONFIRMED: "Confirmed",
    OrderStatus.PROCESSING: "Processing",
    OrderStatus.PACKED: "Packed",
    OrderStatus.SHIPPED: "Shipped",
    OrderStatus.OUT_FOR_DELIVERY: "Out for Delivery",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}

# Forward order of the fulfillment sequence. Cancelled sits outside it.
STATUS_SEQUENCE: List[OrderStatus] = [
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.PACKED,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


class ContactBlock(BaseModel):
    """Shipping or billing contact: postal address plus email and phone."""
    name: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class OrderItemSnapshot(BaseModel):
    """One line of an order as shown in messages."""
    name: str
    quantity: int = Field(default=1, ge=1)
    price: float = Field(default=0.0, ge=0)
    size: Optional[str] = None
    color: Optional[str] = None
    image: Optional[str] = None
    product_id: Optional[str] = None

    class Config:
        from_attributes = True


class OrderSnapshot(BaseModel):
    """Read-only view of an order row plus its items."""
    id: Optional[UUID] = None
    order_number: str
    order_status: OrderStatus = OrderStatus.CONFIRMED
    subtotal: float = 0.0
    shipping_cost: float = 0.0
    tax: float = 0.0
    total_amount: float = 0.0
    payment_method: str = "cod"
    payment_status: str = "pending"
    shipping_address: Optional[ContactBlock] = None
    billing_address: Optional[ContactBlock] = None
    customer_email: Optional[str] = None
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    courier: Optional[str] = None
    track_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    created_at: datetime
    items: List[OrderItemSnapshot] = Field(default_factory=list)

    class Config:
        from_attributes = True

    def contact_email(self) -> Optional[str]:
        """Shipping email, then billing email."""
        for block in (self.shipping_address, self.billing_address):
            if block is not None and block.email:
                return block.email
        return None

    def contact_phone(self) -> Optional[str]:
        """Shipping phone, then billing phone."""
        for block in (self.shipping_address, self.billing_address):
            if block is not None and block.phone:
                return block.phone
        return None
