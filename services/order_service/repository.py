"""Order store backed by the relational database."""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import OrderNotFound
from shared.schemas import OrderSnapshot

from .models import Order, OrderItem

logger = logging.getLogger(__name__)

# Columns a partial update may touch. Anything else is ignored.
UPDATABLE_FIELDS = frozenset({
    "order_status",
    "payment_status",
    "tracking_number",
    "courier",
    "track_url",
    "estimated_delivery",
})


class OrderRepository:
    """Insert, fetch and partially update orders."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert(self, fields: Dict[str, Any], items: List[Dict[str, Any]]) -> OrderSnapshot:
        """Persist a new order with its items and commit."""
        order = Order(**fields)
        order.items = [
            OrderItem(
                position=position,
                product_id=item.get("product_id"),
                name=item["name"],
                image=item.get("image"),
                size=item.get("size"),
                color=item.get("color"),
                quantity=item.get("quantity", 1),
                price=item.get("price", 0.0),
                total=round(item.get("price", 0.0) * item.get("quantity", 1), 2),
            )
            for position, item in enumerate(items)
        ]
        self.session.add(order)
        await self.session.commit()

        logger.info(f"Inserted order {order.order_number} with {len(items)} items")
        return OrderSnapshot.model_validate(order)

    async def get(self, order_number: str) -> Optional[OrderSnapshot]:
        """Fetch an order by number, or None."""
        order = await self._get_row(order_number)
        if order is None:
            return None
        return OrderSnapshot.model_validate(order)

    async def update(self, order_number: str, fields: Dict[str, Any]) -> OrderSnapshot:
        """Apply a partial update. Columns not in ``fields`` are left untouched."""
        order = await self._get_row(order_number)
        if order is None:
            raise OrderNotFound(order_number)

        for name, value in fields.items():
            if name not in UPDATABLE_FIELDS:
                raise ValueError(f"Field {name!r} cannot be updated")
            setattr(order, name, value)

        await self.session.commit()

        logger.info(f"Updated order {order_number}: {sorted(fields)}")
        return OrderSnapshot.model_validate(order)

    async def list_recent(self, limit: int = 100) -> List[OrderSnapshot]:
        """Most recent orders first."""
        result = await self.session.execute(
            select(Order).order_by(Order.created_at.desc()).limit(limit)
        )
        return [OrderSnapshot.model_validate(order) for order in result.scalars().all()]

    async def _get_row(self, order_number: str) -> Optional[Order]:
        result = await self.session.execute(
            select(Order).where(Order.order_number == order_number)
        )
        return result.scalar_one_or_none()


def order_loader(session_factory):
    """Coroutine function that fetches one order snapshot in its own session."""

    async def load(order_number: str) -> Optional[OrderSnapshot]:
        async with session_factory() as session:
            return await OrderRepository(session).get(order_number)

    return load
