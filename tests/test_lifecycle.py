"""Tests for order creation and the status state machine."""
import re
from datetime import datetime, timedelta

import pytest

from conftest import make_draft
from services.notification_service.kinds import NotificationKind
from services.notification_service.models import JobStatus
from services.order_service.lifecycle import STATUS_EFFECTS, check_transition, parse_status
from shared.exceptions import InvalidOrder, InvalidTransition, OrderNotFound
from shared.schemas import ContactBlock, OrderStatus


async def test_create_order_confirms_and_schedules_processing(lifecycle, queue, email_transport, clock):
    order = await lifecycle.create_order(make_draft())

    assert order.order_status is OrderStatus.CONFIRMED
    assert re.fullmatch(r"CL2024\d{6}", order.order_number)
    assert [email["category"] for email in email_transport.sent] == ["order-confirmed"]
    assert "Linen Shirt" in email_transport.sent[0]["html"]

    jobs = await queue.list_jobs(order_number=order.order_number)
    assert len(jobs) == 1
    assert jobs[0].kind == "processing"
    assert jobs[0].scheduled_at == clock() + timedelta(minutes=90)
    assert jobs[0].status == JobStatus.PENDING.value
    assert jobs[0].attempts == 0


async def test_order_numbers_are_fresh_per_call(lifecycle):
    first = await lifecycle.create_order(make_draft())
    second = await lifecycle.create_order(make_draft())
    assert first.order_number != second.order_number


async def test_create_order_with_failed_email_schedules_retry(lifecycle, queue, email_transport, clock):
    email_transport.fail_next = 1

    order = await lifecycle.create_order(make_draft())

    jobs = await queue.list_jobs(order_number=order.order_number)
    kinds = sorted(job.kind for job in jobs)
    assert kinds == ["confirmed-retry", "processing"]
    retry = next(job for job in jobs if job.kind == "confirmed-retry")
    assert retry.scheduled_at == clock()
    assert retry.payload["recipient"] == "asha@example.com"
    assert retry.payload["items"][0]["name"] == "Linen Shirt"

    report = await queue.sweep()
    assert report.sent == 1
    assert email_transport.sent[-1]["category"] == "order-confirmed-retry"


@pytest.mark.parametrize(
    "overrides",
    [
        dict(total_amount=999.0),
        dict(subtotal=0.0, total_amount=0.0),
        dict(items=[]),
        dict(subtotal=100.0, shipping_cost=10.0, tax=5.0, total_amount=115.01),
    ],
)
async def test_create_order_rejects_bad_drafts(lifecycle, email_transport, overrides):
    with pytest.raises(InvalidOrder):
        await lifecycle.create_order(make_draft(**overrides))
    assert email_transport.sent == []


async def test_totals_compared_at_cent_precision(lifecycle):
    order = await lifecycle.create_order(
        make_draft(subtotal=0.1, shipping_cost=0.2, tax=0.0, total_amount=0.3)
    )
    assert order.total_amount == pytest.approx(0.3)


async def test_ship_with_tracking(lifecycle, email_transport, sms_transport):
    order = await lifecycle.create_order(make_draft())
    email_transport.sent.clear()

    updated = await lifecycle.on_status_change(
        order.order_number, "shipped", {"tracking_number": "TRK123", "courier": "Shiprocket"}
    )

    assert updated.order_status is OrderStatus.SHIPPED
    assert updated.tracking_number == "TRK123"
    assert updated.courier == "Shiprocket"
    assert len(email_transport.sent) == 1
    shipped = email_transport.sent[0]
    assert shipped["category"] == "order-shipped"
    assert "TRK123" in shipped["html"]
    assert "Shiprocket" in shipped["html"]
    assert [sms["kind"] for sms in sms_transport.sent] == [NotificationKind.SHIPPED]
    assert sms_transport.sent[0]["tracking_number"] == "TRK123"


async def test_delivered_schedules_follow_up_each_time(lifecycle, queue, email_transport, sms_transport, clock):
    order = await lifecycle.create_order(make_draft())
    email_transport.sent.clear()

    await lifecycle.on_status_change(order.order_number, "delivered")

    assert [email["category"] for email in email_transport.sent] == ["order-delivered"]
    assert [sms["kind"] for sms in sms_transport.sent] == [NotificationKind.DELIVERED]
    follow_ups = await queue.list_jobs(order_number=order.order_number)
    follow_ups = [job for job in follow_ups if job.kind == "follow_up"]
    assert len(follow_ups) == 1
    assert follow_ups[0].scheduled_at == clock() + timedelta(days=3)
    assert follow_ups[0].recipient == "asha@example.com"
    assert follow_ups[0].status == JobStatus.PENDING.value
    assert follow_ups[0].attempts == 0

    clock.advance(minutes=5)
    await lifecycle.on_status_change(order.order_number, "delivered")

    follow_ups = [job for job in await queue.list_jobs(order_number=order.order_number) if job.kind == "follow_up"]
    assert len(follow_ups) == 2


async def test_idempotent_scheduling_replaces_pending_follow_up(lifecycle, queue):
    lifecycle.idempotent_scheduling = True
    order = await lifecycle.create_order(make_draft())

    await lifecycle.on_status_change(order.order_number, "delivered")
    await lifecycle.on_status_change(order.order_number, "delivered")

    follow_ups = [job for job in await queue.list_jobs(order_number=order.order_number) if job.kind == "follow_up"]
    assert len(follow_ups) == 1


async def test_no_follow_up_without_contact_email(lifecycle, queue):
    draft = make_draft(shipping_address=ContactBlock(name="Asha"), customer_email="generic@example.com")
    order = await lifecycle.create_order(draft)

    await lifecycle.on_status_change(order.order_number, "delivered")

    kinds = [job.kind for job in await queue.list_jobs(order_number=order.order_number)]
    assert "follow_up" not in kinds


async def test_unknown_status_rejected_before_any_write(lifecycle, email_transport):
    order = await lifecycle.create_order(make_draft())
    email_transport.sent.clear()

    with pytest.raises(InvalidTransition):
        await lifecycle.on_status_change(order.order_number, "teleported", {"tracking_number": "X"})

    current = await lifecycle.get_order(order.order_number)
    assert current.order_status is OrderStatus.CONFIRMED
    assert current.tracking_number is None
    assert email_transport.sent == []


async def test_backward_and_terminal_moves_rejected(lifecycle):
    order = await lifecycle.create_order(make_draft())
    await lifecycle.on_status_change(order.order_number, "out_for_delivery")

    with pytest.raises(InvalidTransition):
        await lifecycle.on_status_change(order.order_number, "packed")

    await lifecycle.on_status_change(order.order_number, "delivered")
    with pytest.raises(InvalidTransition):
        await lifecycle.on_status_change(order.order_number, "cancelled")
    with pytest.raises(InvalidOrder):
        await lifecycle.on_status_change(order.order_number, None, {"courier": "Other"})


async def test_cancel_clears_scheduled_jobs(lifecycle, queue, email_transport):
    email_transport.fail_next = 1
    order = await lifecycle.create_order(make_draft())
    assert len(await queue.list_jobs(order_number=order.order_number)) == 2
    email_transport.sent.clear()

    updated = await lifecycle.on_status_change(order.order_number, "cancelled")

    assert updated.order_status is OrderStatus.CANCELLED
    assert await queue.list_jobs(order_number=order.order_number) == []
    assert email_transport.sent == []


async def test_tracking_only_update_is_partial_and_silent(lifecycle, email_transport, sms_transport):
    order = await lifecycle.create_order(make_draft())
    await lifecycle.on_status_change(
        order.order_number, "shipped", {"tracking_number": "TRK123", "courier": "Shiprocket"}
    )
    email_transport.sent.clear()
    sms_transport.sent.clear()

    eta = datetime(2024, 5, 4, 18, 0)
    updated = await lifecycle.on_status_change(order.order_number, None, {"estimated_delivery": eta})

    assert updated.order_status is OrderStatus.SHIPPED
    assert updated.tracking_number == "TRK123"
    assert updated.courier == "Shiprocket"
    assert updated.estimated_delivery == eta
    assert email_transport.sent == []
    assert sms_transport.sent == []


async def test_empty_update_rejected(lifecycle):
    order = await lifecycle.create_order(make_draft())
    with pytest.raises(InvalidOrder):
        await lifecycle.on_status_change(order.order_number, None, {})


async def test_unknown_order(lifecycle):
    with pytest.raises(OrderNotFound):
        await lifecycle.on_status_change("CL2024000000", "shipped")
    with pytest.raises(OrderNotFound):
        await lifecycle.get_order("CL2024000000")


async def test_notification_failure_never_blocks_status_write(lifecycle, email_transport):
    order = await lifecycle.create_order(make_draft())
    email_transport.always_fail = True

    updated = await lifecycle.on_status_change(order.order_number, "out_for_delivery")

    assert updated.order_status is OrderStatus.OUT_FOR_DELIVERY
    assert (await lifecycle.get_order(order.order_number)).order_status is OrderStatus.OUT_FOR_DELIVERY


async def test_history_records_immediate_dispatches(lifecycle, history):
    order = await lifecycle.create_order(make_draft())
    await lifecycle.on_status_change(order.order_number, "shipped")

    logs = await history.list_for_order(order.order_number)
    assert sorted((log.kind, log.channel, log.outcome, log.source) for log in logs) == [
        ("confirmed", "email", "sent", "immediate"),
        ("shipped", "email", "sent", "immediate"),
        ("shipped", "sms", "sent", "immediate"),
    ]


def test_transition_rules():
    check_transition(OrderStatus.CONFIRMED, OrderStatus.DELIVERED)
    check_transition(OrderStatus.PACKED, OrderStatus.CANCELLED)
    check_transition(OrderStatus.DELIVERED, OrderStatus.DELIVERED)
    with pytest.raises(InvalidTransition):
        check_transition(OrderStatus.SHIPPED, OrderStatus.PROCESSING)
    with pytest.raises(InvalidTransition):
        check_transition(OrderStatus.CANCELLED, OrderStatus.CONFIRMED)
    with pytest.raises(InvalidTransition):
        parse_status("lost")


def test_status_effects_cover_every_status():
    assert set(STATUS_EFFECTS) == set(OrderStatus)
