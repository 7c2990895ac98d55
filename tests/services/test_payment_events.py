# tests/services/test_payment_events.py
from __future__ import annotations

from giftflow.services.payment_events import handle_gateway_event
from tests.fakes import ADMIN
from tests.services._helpers import pay, place_order


def _event(event: str, payment_id: str, *, gateway_order_id=None, notes=None):
    entity = {"id": payment_id, "status": "captured", "notes": notes or {}}
    if gateway_order_id is not None:
        entity["order_id"] = gateway_order_id
    return {"event": event, "payload": {"payment": {"entity": entity}}}


async def test_captured_event_located_by_gateway_order(manager, gateway, payout_account):
    order = await place_order(manager)

    outcome = await handle_gateway_event(
        manager, _event("payment.captured", "pay_1", gateway_order_id=order.payment_ref)
    )

    assert outcome.handled
    assert outcome.order_id == order.id
    current = await manager.get_order(order.id, actor=ADMIN)
    assert current.status == "awaiting_details"
    assert len(gateway.transfers) == 1


async def test_notes_order_id_takes_precedence(manager, payout_account):
    order = await place_order(manager)

    outcome = await handle_gateway_event(
        manager,
        _event("order.paid", "pay_1", gateway_order_id="order_unknown", notes={"order_id": str(order.id)}),
    )

    assert outcome.handled
    assert outcome.order_id == order.id


async def test_replayed_event_is_idempotent(manager, gateway, payout_account):
    order = await place_order(manager)
    body = _event("payment.captured", "pay_1", gateway_order_id=order.payment_ref)

    first = await handle_gateway_event(manager, body)
    second = await handle_gateway_event(manager, body)

    assert first.handled and second.handled
    assert len(gateway.transfers) == 1


async def test_failed_event_marks_payment_failed(manager):
    order = await place_order(manager)

    outcome = await handle_gateway_event(
        manager, _event("payment.failed", "pay_1", gateway_order_id=order.payment_ref)
    )

    assert outcome.handled
    current = await manager.get_order(order.id, actor=ADMIN)
    assert (current.status, current.payment_status) == ("pending", "failed")


async def test_conflicting_payment_is_acknowledged_but_not_applied(manager, gateway, payout_account):
    order = await place_order(manager)
    await pay(manager, gateway, order)

    outcome = await handle_gateway_event(
        manager, _event("payment.captured", "pay_other", gateway_order_id=order.payment_ref)
    )

    assert not outcome.handled
    assert outcome.reason == "invalid_transition"
    assert (await manager.get_order(order.id, actor=ADMIN)).payment_id == "pay_1"


async def test_unhandled_and_unmatched_events(manager):
    assert (await handle_gateway_event(manager, {"event": "refund.created"})).reason == "unhandled_event"
    assert (
        await handle_gateway_event(manager, {"event": "payment.captured", "payload": {}})
    ).reason == "missing_payment"
    assert (
        await handle_gateway_event(manager, _event("payment.captured", "pay_9", gateway_order_id="order_nope"))
    ).reason == "order_not_found"
