"""Database models for Order Service."""
import secrets
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import relationship

from shared.database import Base, JSONColumn, utcnow
from shared.schemas import OrderStatus


def generate_order_number(prefix: str = "CL", now: Optional[datetime] = None) -> str:
    """Build ``<prefix><yyyy><6-digit random>``, e.g. ``CL2024003421``."""
    year = (now or utcnow()).year
    sequence = secrets.randbelow(1_000_000)
    return f"{prefix}{year:04d}{sequence:06d}"


class Order(Base):
    """Order aggregate root."""

    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    order_number = Column(String(32), nullable=False, unique=True)
    user_id = Column(String(64), nullable=True, index=True)
    order_status = Column(String(32), default=OrderStatus.CONFIRMED.value, nullable=False, index=True)

    # Money
    subtotal = Column(Float, nullable=False, default=0.0)
    shipping_cost = Column(Float, nullable=False, default=0.0)
    tax = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False)

    # Payment
    payment_method = Column(String(32), nullable=False, default="cod")
    payment_status = Column(String(32), nullable=False, default="pending")

    # Contacts
    shipping_address = Column(JSONColumn, nullable=True)
    billing_address = Column(JSONColumn, nullable=True)
    customer_email = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    # Courier metadata
    tracking_number = Column(String(100), nullable=True)
    courier = Column(String(100), nullable=True)
    track_url = Column(String(500), nullable=True)
    estimated_delivery = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.position",
    )

    __table_args__ = (
        Index("ix_orders_status_created", "order_status", "created_at"),
    )


class OrderItem(Base):
    """One purchased line of an order."""

    __tablename__ = "order_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    product_id = Column(String(64), nullable=True)
    name = Column(String(255), nullable=False)
    image = Column(String(500), nullable=True)
    size = Column(String(50), nullable=True)
    color = Column(String(50), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)

    order = relationship("Order", back_populates="items")
