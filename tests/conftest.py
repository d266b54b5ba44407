import os
from datetime import datetime, timedelta

os.environ.setdefault("DATABASE_DSN", "sqlite+aiosqlite:///:memory:")

import pytest

from services.notification_service.dispatcher import NotificationDispatcher
from services.notification_service.queue import PersistentNotificationQueue
from services.notification_service.store import JobStore, NotificationLogStore
from services.notification_service.templates import TemplateRenderer
from services.notification_service.transports import SendReceipt
from services.order_service.lifecycle import OrderLifecycle
from services.order_service.repository import order_loader
from services.order_service.schemas import OrderDraft
from shared.database import Database
from shared.exceptions import TransportFailure
from shared.schemas import ContactBlock, OrderItemSnapshot, OrderSnapshot


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingEmailTransport:
    """Captures sends. Fails the next ``fail_next`` sends, or every send when ``always_fail``."""

    name = "recording"

    def __init__(self):
        self.sent = []
        self.fail_next = 0
        self.always_fail = False

    async def send(self, *, to, subject, html, category, bcc=None):
        self.sent.append({"to": to, "subject": subject, "html": html, "category": category, "bcc": bcc})
        if self.always_fail or self.fail_next > 0:
            self.fail_next = max(0, self.fail_next - 1)
            raise TransportFailure(self.name, "provider unavailable")
        return SendReceipt(provider=self.name, message_id=f"msg-{len(self.sent)}")


class RecordingSmsTransport:
    def __init__(self):
        self.sent = []

    async def send_order_sms(self, kind, order, tracking_number=None):
        if not order.contact_phone():
            return False
        self.sent.append({"kind": kind, "order_number": order.order_number, "tracking_number": tracking_number})
        return True


def make_order(**overrides) -> OrderSnapshot:
    fields = dict(
        order_number="CL2024003421",
        order_status="confirmed",
        subtotal=1000.0,
        shipping_cost=0.0,
        tax=0.0,
        total_amount=1000.0,
        shipping_address=ContactBlock(
            name="Asha Rao",
            address1="12 MG Road",
            city="Bengaluru",
            state="KA",
            zip="560001",
            country="IN",
            email="asha@example.com",
            phone="+919800000000",
        ),
        customer_email="fallback@example.com",
        created_at=datetime(2024, 5, 1, 10, 0, 0),
        items=[OrderItemSnapshot(name="Linen Shirt", quantity=1, price=1000.0, size="M", color="White")],
    )
    fields.update(overrides)
    return OrderSnapshot(**fields)


def make_draft(**overrides) -> OrderDraft:
    fields = dict(
        items=[OrderItemSnapshot(name="Linen Shirt", quantity=1, price=1000.0, size="M", color="White")],
        subtotal=1000.0,
        shipping_cost=0.0,
        tax=0.0,
        total_amount=1000.0,
        shipping_address=ContactBlock(
            name="Asha Rao",
            address1="12 MG Road",
            city="Bengaluru",
            email="asha@example.com",
            phone="+919800000000",
        ),
    )
    fields.update(overrides)
    return OrderDraft(**fields)


@pytest.fixture()
def clock():
    return FixedClock(datetime(2024, 5, 1, 10, 0, 0))


@pytest.fixture()
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture()
def email_transport():
    return RecordingEmailTransport()


@pytest.fixture()
def sms_transport():
    return RecordingSmsTransport()


@pytest.fixture()
def renderer():
    return TemplateRenderer(
        storefront_url="https://shop.example",
        logo_url="https://shop.example/logo.svg",
    )


@pytest.fixture()
def dispatcher(email_transport, sms_transport, renderer):
    return NotificationDispatcher(email_transport, sms_transport, renderer, bcc=["ops@example.com"])


@pytest.fixture()
def jobs(database):
    return JobStore(database.session_factory)


@pytest.fixture()
def history(database):
    return NotificationLogStore(database.session_factory)


@pytest.fixture()
def queue(database, jobs, dispatcher, history, clock):
    return PersistentNotificationQueue(
        jobs=jobs,
        dispatcher=dispatcher,
        order_loader=order_loader(database.session_factory),
        history=history,
        create_tables=database.create_tables,
        clock=clock,
    )


@pytest.fixture()
def lifecycle(database, dispatcher, queue, history, clock):
    return OrderLifecycle(
        session_factory=database.session_factory,
        dispatcher=dispatcher,
        queue=queue,
        history=history,
        clock=clock,
    )
