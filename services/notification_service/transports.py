"""Email and SMS transport adapters.

Every adapter sends over one shared ``httpx.AsyncClient`` owned by the app
lifespan. Email adapters raise ``TransportFailure``; SMS adapters never raise.
"""
import logging
from typing import List, Optional, Protocol

import httpx
from pydantic import BaseModel

from shared.config import Settings
from shared.exceptions import TransportFailure
from shared.schemas import OrderSnapshot

from .kinds import NotificationKind

logger = logging.getLogger(__name__)


class SendReceipt(BaseModel):
    """Provider acknowledgement of an accepted message."""
    provider: str
    message_id: Optional[str] = None


class EmailTransport(Protocol):
    name: str

    async def send(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        category: str,
        bcc: Optional[List[str]] = None,
    ) -> SendReceipt:
        ...


class SmsTransport(Protocol):
    async def send_order_sms(
        self,
        kind: NotificationKind,
        order: OrderSnapshot,
        tracking_number: Optional[str] = None,
    ) -> bool:
        ...


def _raise_for_status(provider: str, response: httpx.Response):
    if response.status_code >= 400:
        raise TransportFailure(provider, f"HTTP {response.status_code}: {response.text[:200]}")


def _message_id(response: httpx.Response, key: str) -> Optional[str]:
    """Provider message id from a 2xx body, or None when the body is not JSON."""
    if not response.content:
        return None
    try:
        body = response.json()
    except ValueError:
        logger.warning(f"Accepted response was not JSON: {response.text[:200]}")
        return None
    return body.get(key) if isinstance(body, dict) else None


class BrevoEmailTransport:
    """Brevo transactional email API."""

    name = "brevo"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        sender_email: str,
        sender_name: str,
        base_url: str = "https://api.brevo.com/v3",
    ):
        self.client = client
        self.api_key = api_key
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.base_url = base_url.rstrip("/")

    async def send(self, *, to, subject, html, category, bcc=None) -> SendReceipt:
        payload = {
            "sender": {"email": self.sender_email, "name": self.sender_name},
            "to": [{"email": to}],
            "subject": subject,
            "htmlContent": html,
            "tags": [category],
        }
        if bcc:
            payload["bcc"] = [{"email": address} for address in bcc]

        try:
            response = await self.client.post(
                f"{self.base_url}/smtp/email",
                json=payload,
                headers={"api-key": self.api_key, "accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise TransportFailure(self.name, str(e) or type(e).__name__) from e

        _raise_for_status(self.name, response)
        message_id = _message_id(response, "messageId")
        return SendReceipt(provider=self.name, message_id=message_id)


class MailgunEmailTransport:
    """Mailgun messages API."""

    name = "mailgun"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        domain: str,
        sender_email: str,
        sender_name: str,
        base_url: str = "https://api.mailgun.net",
    ):
        self.client = client
        self.api_key = api_key
        self.domain = domain
        self.sender = f"{sender_name} <{sender_email}>"
        self.base_url = base_url.rstrip("/")

    async def send(self, *, to, subject, html, category, bcc=None) -> SendReceipt:
        data = {
            "from": self.sender,
            "to": to,
            "subject": subject,
            "html": html,
            "o:tag": category,
        }
        if bcc:
            data["bcc"] = ",".join(bcc)

        try:
            response = await self.client.post(
                f"{self.base_url}/v3/{self.domain}/messages",
                data=data,
                auth=("api", self.api_key),
            )
        except httpx.HTTPError as e:
            raise TransportFailure(self.name, str(e) or type(e).__name__) from e

        _raise_for_status(self.name, response)
        message_id = _message_id(response, "id")
        return SendReceipt(provider=self.name, message_id=message_id)


class ConsoleEmailTransport:
    """Writes the email to the log instead of sending it."""

    name = "console"

    async def send(self, *, to, subject, html, category, bcc=None) -> SendReceipt:
        logger.info(f"[EMAIL] To: {to}")
        logger.info(f"[EMAIL] Subject: {subject}")
        logger.info(f"[EMAIL] Category: {category} BCC: {', '.join(bcc or []) or '-'}")
        logger.info(f"[EMAIL] Body: {len(html)} characters of HTML")
        logger.info("-" * 60)
        return SendReceipt(provider=self.name)


class FailoverEmailTransport:
    """Tries each transport in order until one accepts the message."""

    name = "failover"

    def __init__(self, transports: List[EmailTransport]):
        if not transports:
            raise ValueError("FailoverEmailTransport needs at least one transport")
        self.transports = transports

    async def send(self, *, to, subject, html, category, bcc=None) -> SendReceipt:
        last_error: Optional[TransportFailure] = None
        for transport in self.transports:
            try:
                return await transport.send(
                    to=to, subject=subject, html=html, category=category, bcc=bcc
                )
            except TransportFailure as e:
                logger.warning(f"Email provider {transport.name} failed: {str(e)}")
                last_error = e

        raise TransportFailure(self.name, f"all providers failed, last error: {last_error}")


def sms_text(kind: NotificationKind, order: OrderSnapshot, tracking_number: Optional[str], brand: str, storefront: str) -> str:
    """Plain-text SMS body for one of the SMS kinds."""
    number = order.order_number
    if kind is NotificationKind.SHIPPED:
        tracking = f" Tracking: {tracking_number}." if tracking_number else ""
        return f"Your {brand} order #{number} has shipped!{tracking} Track at {storefront}/orders"
    if kind is NotificationKind.OUT_FOR_DELIVERY:
        return f"Your {brand} order #{number} is out for delivery today! Expect it soon."
    if kind is NotificationKind.DELIVERED:
        return f"Your {brand} order #{number} has been delivered! We hope you love it. Leave a review at {storefront}/orders"
    raise ValueError(f"No SMS text for {kind.value}")


class BrevoSmsTransport:
    """Brevo transactional SMS. Failures are logged and reported as False."""

    name = "brevo-sms"

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        sender: str,
        brand_name: str,
        storefront_url: str,
        base_url: str = "https://api.brevo.com/v3",
    ):
        self.client = client
        self.api_key = api_key
        self.sender = sender
        self.brand_name = brand_name
        self.storefront_url = storefront_url.rstrip("/")
        self.base_url = base_url.rstrip("/")

    async def send_order_sms(self, kind, order, tracking_number=None) -> bool:
        phone = order.contact_phone()
        if not phone:
            logger.info(f"No phone number for SMS on order {order.order_number}")
            return False

        payload = {
            "sender": self.sender,
            "recipient": phone,
            "content": sms_text(kind, order, tracking_number, self.brand_name, self.storefront_url),
            "type": "transactional",
        }
        try:
            response = await self.client.post(
                f"{self.base_url}/transactionalSMS/sms",
                json=payload,
                headers={"api-key": self.api_key, "accept": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Brevo SMS send failed for order {order.order_number} ({kind.value}): {str(e)}")
            return False

        logger.info(f"SMS {kind.value} sent for order {order.order_number}")
        return True


class NullSmsTransport:
    """Used when SMS is not configured."""

    name = "null-sms"

    async def send_order_sms(self, kind, order, tracking_number=None) -> bool:
        logger.debug(f"SMS not configured; skipping {kind.value} SMS for order {order.order_number}")
        return False


def build_email_transport(settings: Settings, client: httpx.AsyncClient) -> EmailTransport:
    """Assemble the configured email providers in priority order."""
    sender_email = settings.email_from or settings.support_email
    available = {}
    if settings.brevo_api_key:
        available["brevo"] = BrevoEmailTransport(
            client,
            api_key=settings.brevo_api_key,
            sender_email=sender_email,
            sender_name=settings.email_from_name,
            base_url=settings.brevo_api_base_url,
        )
    if settings.mailgun_api_key and settings.mailgun_domain:
        available["mailgun"] = MailgunEmailTransport(
            client,
            api_key=settings.mailgun_api_key,
            domain=settings.mailgun_domain,
            sender_email=sender_email,
            sender_name=settings.email_from_name,
            base_url=settings.mailgun_api_base_url,
        )

    transports = [available[name] for name in settings.email_providers if name in available]
    if not transports:
        logger.warning("No email provider configured; emails will be logged only")
        return ConsoleEmailTransport()
    if len(transports) == 1:
        return transports[0]
    return FailoverEmailTransport(transports)


def build_sms_transport(settings: Settings, client: httpx.AsyncClient) -> SmsTransport:
    if not (settings.brevo_api_key and settings.brevo_sms_sender):
        logger.warning("Brevo SMS not configured; SMS will be skipped")
        return NullSmsTransport()
    return BrevoSmsTransport(
        client,
        api_key=settings.brevo_api_key,
        sender=settings.brevo_sms_sender,
        brand_name=settings.brand_name,
        storefront_url=settings.storefront_url,
        base_url=settings.brevo_api_base_url,
    )
