"""Immediate Dispatcher: render and send one notification, now.

``dispatch`` never raises for delivery problems. It returns a
``DispatchResult`` and leaves it to the caller to decide what a failure means:
the order lifecycle logs and moves on, the queue sweep counts an attempt.
"""
import logging
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from shared.exceptions import RecipientUnresolved, TransportFailure
from shared.schemas import OrderSnapshot

from .kinds import NotificationKind, NotificationParams
from .templates import TemplateRenderer
from .transports import EmailTransport, SendReceipt, SmsTransport

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


class DispatchResult(BaseModel):
    """What happened to one dispatch call."""
    kind: NotificationKind
    order_number: str
    outcome: DispatchOutcome
    recipient: Optional[str] = None
    receipt: Optional[SendReceipt] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    sms_sent: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome is DispatchOutcome.SENT


def resolve_recipient(order: OrderSnapshot, params: NotificationParams) -> Optional[str]:
    """Captured recipient, then shipping email, billing email, customer email."""
    return params.recipient or order.contact_email() or order.customer_email


class NotificationDispatcher:
    """Sends one notification through the configured transports."""

    def __init__(
        self,
        email_transport: EmailTransport,
        sms_transport: SmsTransport,
        renderer: TemplateRenderer,
        bcc: Optional[List[str]] = None,
    ):
        self.email_transport = email_transport
        self.sms_transport = sms_transport
        self.renderer = renderer
        self.bcc = list(bcc or [])

    async def dispatch(
        self,
        kind: NotificationKind,
        order: OrderSnapshot,
        params: Optional[NotificationParams] = None,
    ) -> DispatchResult:
        """
        Render and send ``kind`` for ``order``.

        Args:
            kind: Notification kind to send
            order: Current order snapshot
            params: Kind-specific inputs (items override, tracking, recipient)

        Returns:
            DispatchResult with outcome sent, skipped or failed
        """
        params = params or NotificationParams()

        recipient = resolve_recipient(order, params)
        if recipient:
            result = await self._send_email(kind, order, params, recipient)
        else:
            reason = RecipientUnresolved(order.order_number)
            logger.warning(f"Skipping {kind.value} email: {reason}")
            result = DispatchResult(
                kind=kind,
                order_number=order.order_number,
                outcome=DispatchOutcome.SKIPPED,
                error=str(reason),
                error_type=type(reason).__name__,
            )

        # SMS goes out after the email, whatever the email outcome.
        if kind.sends_sms:
            result.sms_sent = await self.sms_transport.send_order_sms(
                kind, order, params.tracking_number or order.tracking_number
            )
        return result

    async def _send_email(
        self,
        kind: NotificationKind,
        order: OrderSnapshot,
        params: NotificationParams,
        recipient: str,
    ) -> DispatchResult:
        message = self.renderer.render(kind, order, params)
        try:
            receipt = await self.email_transport.send(
                to=recipient,
                subject=message.subject,
                html=message.html,
                category=kind.category,
                bcc=self.bcc or None,
            )
        except TransportFailure as e:
            logger.error(f"Failed to send {kind.value} email for order {order.order_number}: {str(e)}")
            return DispatchResult(
                kind=kind,
                order_number=order.order_number,
                outcome=DispatchOutcome.FAILED,
                recipient=recipient,
                error=str(e),
                error_type=type(e).__name__,
            )

        logger.info(f"Sent {kind.value} email for order {order.order_number} via {receipt.provider}")
        return DispatchResult(
            kind=kind,
            order_number=order.order_number,
            outcome=DispatchOutcome.SENT,
            recipient=recipient,
            receipt=receipt,
        )
