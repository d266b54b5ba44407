"""Request/response models for the order HTTP API."""
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from shared.schemas import ContactBlock, OrderItemSnapshot


class OrderDraft(BaseModel):
    """Request to create a new order."""
    user_id: Optional[str] = None
    items: List[OrderItemSnapshot]
    subtotal: float = Field(ge=0)
    shipping_cost: float = Field(default=0.0, ge=0)
    tax: float = Field(default=0.0, ge=0)
    total_amount: float = Field(ge=0)
    payment_method: str = "cod"
    payment_status: str = "pending"
    shipping_address: Optional[ContactBlock] = None
    billing_address: Optional[ContactBlock] = None
    customer_email: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class UpdateOrderRequest(BaseModel):
    """Partial admin update. Only fields present in the body are applied."""
    order_status: Optional[str] = None
    tracking_number: Optional[str] = None
    courier: Optional[str] = None
    track_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None

    @field_validator("estimated_delivery")
    @classmethod
    def naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Columns store naive UTC."""
        if value is not None and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def tracking_fields(self) -> dict:
        """Tracking fields explicitly sent by the client, nulls included."""
        return {
            name: getattr(self, name)
            for name in ("tracking_number", "courier", "track_url", "estimated_delivery")
            if name in self.model_fields_set
        }


class NotificationJobResponse(BaseModel):
    """Delayed notification job."""
    id: UUID
    order_number: str
    kind: str
    recipient: Optional[str] = None
    scheduled_at: datetime
    status: str
    attempts: int
    last_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationLogResponse(BaseModel):
    """One dispatch attempt from the notification history."""
    id: UUID
    order_number: str
    kind: str
    channel: str
    outcome: str
    source: str
    recipient: Optional[str] = None
    provider: Optional[str] = None
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CountResponse(BaseModel):
    """Number of rows affected by an operator action."""
    count: int
