"""Order status state machine.

Validates transitions, persists them, then fires the notifications each
status calls for. Notifications are best-effort: whatever happens to them, the
status write stands and the updated order is returned.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from shared.database import utcnow
from shared.exceptions import InvalidOrder, InvalidTransition, OrderNotFound
from shared.schemas import (
    STATUS_SEQUENCE,
    TERMINAL_STATUSES,
    OrderItemSnapshot,
    OrderSnapshot,
    OrderStatus,
)

from services.notification_service.dispatcher import (
    DispatchOutcome,
    DispatchResult,
    NotificationDispatcher,
)
from services.notification_service.kinds import (
    SCHEDULED_KINDS,
    STATUS_KIND,
    NotificationKind,
    NotificationParams,
)
from services.notification_service.queue import PersistentNotificationQueue
from services.notification_service.store import NotificationLogStore

from .models import generate_order_number
from .repository import OrderRepository, order_loader
from .schemas import OrderDraft

logger = logging.getLogger(__name__)

TRACKING_FIELDS = ("tracking_number", "courier", "track_url", "estimated_delivery")


class StatusEffect(BaseModel):
    """Side effects of moving an order into a status through an update."""
    notify: bool = False
    schedule_follow_up: bool = False
    cancel_scheduled: bool = False


# Confirmed notifies only on the creation path; processing and packed are
# extension points with no side effect yet.
STATUS_EFFECTS: Dict[OrderStatus, StatusEffect] = {
    OrderStatus.CONFIRMED: StatusEffect(),
    OrderStatus.PROCESSING: StatusEffect(),
    OrderStatus.PACKED: StatusEffect(),
    OrderStatus.SHIPPED: StatusEffect(notify=True),
    OrderStatus.OUT_FOR_DELIVERY: StatusEffect(notify=True),
    OrderStatus.DELIVERED: StatusEffect(notify=True, schedule_follow_up=True),
    OrderStatus.CANCELLED: StatusEffect(cancel_scheduled=True),
}

if set(STATUS_EFFECTS) != set(OrderStatus):
    raise RuntimeError("STATUS_EFFECTS must cover every OrderStatus")


def parse_status(requested: Any) -> OrderStatus:
    """Map a raw status value onto the enum or raise ``InvalidTransition``."""
    try:
        return OrderStatus(requested)
    except ValueError:
        raise InvalidTransition(str(requested)) from None


def check_transition(current: OrderStatus, target: OrderStatus):
    """Raise ``InvalidTransition`` unless ``current -> target`` is allowed.

    Forward moves (skipping allowed), moves to cancelled from any non-terminal
    status, and re-applying the current status are allowed.
    """
    if target == current:
        return
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(target.value, current.value)
    if target is OrderStatus.CANCELLED:
        return
    if STATUS_SEQUENCE.index(target) < STATUS_SEQUENCE.index(current):
        raise InvalidTransition(target.value, current.value)


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


def validate_draft(draft: OrderDraft):
    """Creation rules: non-empty items, positive total, total adds up."""
    if not draft.items:
        raise InvalidOrder("Order must contain at least one item")
    if draft.total_amount <= 0:
        raise InvalidOrder("Order total must be greater than zero")
    expected = to_cents(draft.subtotal) + to_cents(draft.shipping_cost) + to_cents(draft.tax)
    if to_cents(draft.total_amount) != expected:
        raise InvalidOrder(
            f"Order total {draft.total_amount:.2f} does not equal "
            f"subtotal + shipping + tax ({expected / 100:.2f})"
        )


class OrderLifecycle:
    """Creates orders and applies status changes with their notifications."""

    def __init__(
        self,
        session_factory,
        dispatcher: NotificationDispatcher,
        queue: PersistentNotificationQueue,
        history: Optional[NotificationLogStore] = None,
        clock: Callable[[], datetime] = utcnow,
        order_number_prefix: str = "CL",
        processing_delay: timedelta = timedelta(minutes=90),
        follow_up_delay: timedelta = timedelta(days=3),
        idempotent_scheduling: bool = False,
    ):
        """
        Initialize the lifecycle.

        Args:
            session_factory: Async session factory for the order store
            dispatcher: Immediate dispatcher
            queue: Delayed notification queue
            history: Optional dispatch history store
            clock: Returns the current naive UTC time
            order_number_prefix: Two-letter order number prefix
            processing_delay: Delay of the "preparing your order" email
            follow_up_delay: Delay of the follow-up email after delivery
            idempotent_scheduling: Cancel pending jobs of a kind before scheduling it again
        """
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.queue = queue
        self.history = history
        self.clock = clock
        self.order_number_prefix = order_number_prefix
        self.processing_delay = processing_delay
        self.follow_up_delay = follow_up_delay
        self.idempotent_scheduling = idempotent_scheduling
        self._load = order_loader(session_factory)

    # Reads

    async def load_order(self, order_number: str) -> Optional[OrderSnapshot]:
        return await self._load(order_number)

    async def get_order(self, order_number: str) -> OrderSnapshot:
        order = await self.load_order(order_number)
        if order is None:
            raise OrderNotFound(order_number)
        return order

    async def list_orders(self, limit: int = 100) -> List[OrderSnapshot]:
        async with self.session_factory() as session:
            return await OrderRepository(session).list_recent(limit)

    # Creation

    async def create_order(self, draft: OrderDraft) -> OrderSnapshot:
        """Validate, persist with status confirmed, then run the creation notifications."""
        validate_draft(draft)

        now = self.clock()
        fields = {
            "order_number": generate_order_number(self.order_number_prefix, now),
            "user_id": draft.user_id,
            "order_status": OrderStatus.CONFIRMED.value,
            "subtotal": draft.subtotal,
            "shipping_cost": draft.shipping_cost,
            "tax": draft.tax,
            "total_amount": draft.total_amount,
            "payment_method": draft.payment_method,
            "payment_status": draft.payment_status,
            "shipping_address": draft.shipping_address.model_dump() if draft.shipping_address else None,
            "billing_address": draft.billing_address.model_dump() if draft.billing_address else None,
            "customer_email": draft.customer_email,
            "notes": draft.notes,
            "created_at": now,
            "updated_at": now,
        }
        items = [item.model_dump() for item in draft.items]

        async with self.session_factory() as session:
            order = await OrderRepository(session).insert(fields, items)

        logger.info(f"Created order {order.order_number} (total={order.total_amount:.2f})")

        await self.on_order_created(order, order.items)
        return order

    async def on_order_created(self, order: OrderSnapshot, items: List[OrderItemSnapshot]):
        """Send the confirmation now and schedule the follow-on jobs."""
        now = self.clock()
        recipient = order.contact_email() or order.customer_email

        result = await self._dispatch(
            NotificationKind.CONFIRMED, order, NotificationParams(items=items)
        )

        try:
            if result is None or result.outcome is DispatchOutcome.FAILED:
                retry_params = NotificationParams(items=items, recipient=recipient)
                await self.queue.schedule(
                    order.order_number,
                    NotificationKind.CONFIRMED_RETRY,
                    recipient,
                    now,
                    retry_params.to_metadata(),
                )

            await self._schedule(
                order.order_number,
                NotificationKind.PROCESSING,
                recipient,
                now + self.processing_delay,
            )
        except Exception as e:
            logger.error(
                f"Failed to schedule notifications for order {order.order_number}: {str(e)}",
                exc_info=True
            )

    # Status changes

    async def on_status_change(
        self,
        order_number: str,
        new_status: Optional[Any] = None,
        tracking: Optional[Dict[str, Any]] = None,
    ) -> OrderSnapshot:
        """
        Apply a status change and/or tracking update.

        Args:
            order_number: Order to update
            new_status: Requested status, or None for a tracking-only update
            tracking: Tracking fields explicitly present in the request

        Returns:
            The updated order snapshot
        """
        target = parse_status(new_status) if new_status is not None else None

        fields = {
            name: value
            for name, value in (tracking or {}).items()
            if name in TRACKING_FIELDS
        }
        if target is not None:
            fields["order_status"] = target.value
        if not fields:
            raise InvalidOrder("No updates provided")

        async with self.session_factory() as session:
            repository = OrderRepository(session)
            current = await repository.get(order_number)
            if current is None:
                raise OrderNotFound(order_number)
            if target is not None:
                check_transition(current.order_status, target)
            elif current.order_status in TERMINAL_STATUSES:
                raise InvalidOrder(
                    f"Order {order_number} is {current.order_status.value} and can no longer be changed"
                )

            updated = await repository.update(order_number, fields)

        if target is None:
            return updated

        logger.info(f"Order {order_number}: {current.order_status.value} -> {target.value}")
        await self._apply_effects(target, updated)
        return updated

    async def _apply_effects(self, status: OrderStatus, order: OrderSnapshot):
        effect = STATUS_EFFECTS[status]
        now = self.clock()

        if effect.notify:
            await self._dispatch(STATUS_KIND[status], order)

        try:
            if effect.schedule_follow_up:
                recipient = order.contact_email()
                if recipient:
                    await self._schedule(
                        order.order_number,
                        NotificationKind.FOLLOW_UP,
                        recipient,
                        now + self.follow_up_delay,
                    )
                else:
                    logger.info(f"No contact email on order {order.order_number}; follow-up not scheduled")

            if effect.cancel_scheduled:
                for kind in sorted(SCHEDULED_KINDS, key=lambda k: k.value):
                    await self.queue.cancel(order.order_number, kind)
        except Exception as e:
            logger.error(
                f"Failed to update scheduled notifications for order {order.order_number}: {str(e)}",
                exc_info=True
            )

    async def _schedule(
        self,
        order_number: str,
        kind: NotificationKind,
        recipient: Optional[str],
        when: datetime,
    ):
        if self.idempotent_scheduling:
            await self.queue.cancel(order_number, kind)
        await self.queue.schedule(order_number, kind, recipient, when)

    async def _dispatch(
        self,
        kind: NotificationKind,
        order: OrderSnapshot,
        params: Optional[NotificationParams] = None,
    ) -> Optional[DispatchResult]:
        """Dispatch and record. Returns None when dispatch itself blew up."""
        try:
            result = await self.dispatcher.dispatch(kind, order, params)
        except Exception as e:
            logger.error(
                f"Dispatch of {kind.value} for order {order.order_number} raised: {str(e)}",
                exc_info=True
            )
            return None

        if not result.ok:
            logger.warning(
                f"{kind.value} notification for order {order.order_number} "
                f"{result.outcome.value}: {result.error}"
            )

        if self.history is not None:
            try:
                await self.history.record(result, source="immediate")
            except Exception as e:
                logger.error(f"Failed to record notification history: {str(e)}", exc_info=True)

        return result
