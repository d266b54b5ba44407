"""Tests for the email and SMS adapters against a mocked HTTP layer."""
import json

import httpx
import pytest

from conftest import make_order
from services.notification_service.dispatcher import DispatchOutcome, NotificationDispatcher
from services.notification_service.kinds import NotificationKind
from services.notification_service.transports import (
    BrevoEmailTransport,
    BrevoSmsTransport,
    ConsoleEmailTransport,
    FailoverEmailTransport,
    MailgunEmailTransport,
    NullSmsTransport,
    SendReceipt,
    build_email_transport,
    build_sms_transport,
)
from shared.config import Settings
from shared.exceptions import TransportFailure
from shared.schemas import ContactBlock


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def test_brevo_email_request():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"messageId": "<abc@brevo>"})

    async with mock_client(handler) as client:
        transport = BrevoEmailTransport(client, "key-1", "orders@shop.example", "CalistaLife")
        receipt = await transport.send(
            to="asha@example.com", subject="Hi", html="<p>Hi</p>", category="order-shipped", bcc=["ops@example.com"]
        )

    assert receipt.provider == "brevo"
    assert receipt.message_id == "<abc@brevo>"
    request = requests[0]
    assert str(request.url) == "https://api.brevo.com/v3/smtp/email"
    assert request.headers["api-key"] == "key-1"
    body = json.loads(request.content)
    assert body["to"] == [{"email": "asha@example.com"}]
    assert body["bcc"] == [{"email": "ops@example.com"}]
    assert body["tags"] == ["order-shipped"]
    assert body["sender"] == {"email": "orders@shop.example", "name": "CalistaLife"}


async def test_brevo_error_raises_transport_failure():
    async with mock_client(lambda request: httpx.Response(401, text="unauthorized")) as client:
        transport = BrevoEmailTransport(client, "bad", "orders@shop.example", "CalistaLife")
        with pytest.raises(TransportFailure) as exc:
            await transport.send(to="a@example.com", subject="s", html="h", category="order-confirmed")

    assert exc.value.provider == "brevo"
    assert "401" in str(exc.value)


@pytest.mark.parametrize(
    "transport_factory",
    [
        lambda client: BrevoEmailTransport(client, "key-1", "orders@shop.example", "CalistaLife"),
        lambda client: MailgunEmailTransport(client, "key-2", "mg.shop.example", "orders@shop.example", "CalistaLife"),
    ],
)
async def test_accepted_non_json_body_is_still_a_receipt(transport_factory):
    async with mock_client(lambda request: httpx.Response(200, text="OK")) as client:
        receipt = await transport_factory(client).send(
            to="a@example.com", subject="s", html="h", category="order-confirmed"
        )

    assert receipt.message_id is None


async def test_dispatch_succeeds_when_provider_answers_plain_text(renderer):
    async with mock_client(lambda request: httpx.Response(200, text="<html>queued</html>")) as client:
        dispatcher = NotificationDispatcher(
            BrevoEmailTransport(client, "key-1", "orders@shop.example", "CalistaLife"),
            NullSmsTransport(),
            renderer,
        )
        result = await dispatcher.dispatch(NotificationKind.CONFIRMED, make_order())

    assert result.outcome is DispatchOutcome.SENT
    assert result.receipt == SendReceipt(provider="brevo")


async def test_network_error_raises_transport_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_client(handler) as client:
        transport = BrevoEmailTransport(client, "key", "orders@shop.example", "CalistaLife")
        with pytest.raises(TransportFailure):
            await transport.send(to="a@example.com", subject="s", html="h", category="order-confirmed")


async def test_mailgun_request():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"id": "<mg-1>", "message": "Queued"})

    async with mock_client(handler) as client:
        transport = MailgunEmailTransport(client, "key-2", "mg.shop.example", "orders@shop.example", "CalistaLife")
        receipt = await transport.send(to="a@example.com", subject="s", html="h", category="order-delivered")

    assert receipt.message_id == "<mg-1>"
    request = requests[0]
    assert str(request.url) == "https://api.mailgun.net/v3/mg.shop.example/messages"
    assert request.headers["authorization"].startswith("Basic ")
    assert b"o%3Atag=order-delivered" in request.content


async def test_failover_uses_next_provider():
    def failing(request):
        return httpx.Response(500, text="down")

    def working(request):
        return httpx.Response(200, json={"id": "<mg-2>"})

    async with mock_client(failing) as bad_client, mock_client(working) as good_client:
        transport = FailoverEmailTransport([
            BrevoEmailTransport(bad_client, "key", "orders@shop.example", "CalistaLife"),
            MailgunEmailTransport(good_client, "key", "mg.shop.example", "orders@shop.example", "CalistaLife"),
        ])
        receipt = await transport.send(to="a@example.com", subject="s", html="h", category="order-confirmed")

    assert receipt.provider == "mailgun"


async def test_failover_raises_when_all_fail():
    async with mock_client(lambda request: httpx.Response(503)) as client:
        transport = FailoverEmailTransport([
            BrevoEmailTransport(client, "key", "orders@shop.example", "CalistaLife"),
        ])
        with pytest.raises(TransportFailure) as exc:
            await transport.send(to="a@example.com", subject="s", html="h", category="order-confirmed")

    assert exc.value.provider == "failover"


async def test_console_transport_logs(caplog):
    transport = ConsoleEmailTransport()
    with caplog.at_level("INFO", logger="services.notification_service.transports"):
        receipt = await transport.send(to="a@example.com", subject="Hello", html="<p>x</p>", category="order-packed")

    assert receipt.provider == "console"
    assert any("[EMAIL] Subject: Hello" in record.getMessage() for record in caplog.records)


async def test_brevo_sms_request():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"reference": "ab1"})

    async with mock_client(handler) as client:
        transport = BrevoSmsTransport(client, "key", "CALISTA", "CalistaLife", "https://shop.example")
        sent = await transport.send_order_sms(NotificationKind.SHIPPED, make_order(), "TRK123")

    assert sent is True
    body = json.loads(requests[0].content)
    assert str(requests[0].url) == "https://api.brevo.com/v3/transactionalSMS/sms"
    assert body["recipient"] == "+919800000000"
    assert body["sender"] == "CALISTA"
    assert body["type"] == "transactional"
    assert "CL2024003421" in body["content"]
    assert "TRK123" in body["content"]


async def test_sms_failure_is_not_raised():
    async with mock_client(lambda request: httpx.Response(400, json={"message": "invalid"})) as client:
        transport = BrevoSmsTransport(client, "key", "CALISTA", "CalistaLife", "https://shop.example")
        sent = await transport.send_order_sms(NotificationKind.DELIVERED, make_order())

    assert sent is False


async def test_sms_without_phone_is_skipped():
    calls = []
    async with mock_client(lambda request: calls.append(request) or httpx.Response(201)) as client:
        transport = BrevoSmsTransport(client, "key", "CALISTA", "CalistaLife", "https://shop.example")
        order = make_order(shipping_address=ContactBlock(email="a@example.com"))
        sent = await transport.send_order_sms(NotificationKind.DELIVERED, order)

    assert sent is False
    assert calls == []


async def test_builders_follow_configuration():
    async with httpx.AsyncClient() as client:
        assert isinstance(build_email_transport(Settings(), client), ConsoleEmailTransport)
        assert isinstance(build_sms_transport(Settings(), client), NullSmsTransport)

        brevo_only = Settings(brevo_api_key="k")
        assert isinstance(build_email_transport(brevo_only, client), BrevoEmailTransport)

        both = Settings(
            brevo_api_key="k",
            mailgun_api_key="m",
            mailgun_domain="mg.shop.example",
            email_provider_priority="mailgun, brevo",
        )
        failover = build_email_transport(both, client)
        assert isinstance(failover, FailoverEmailTransport)
        assert [transport.name for transport in failover.transports] == ["mailgun", "brevo"]

        sms = build_sms_transport(Settings(brevo_api_key="k", brevo_sms_sender="CALISTA"), client)
        assert isinstance(sms, BrevoSmsTransport)
