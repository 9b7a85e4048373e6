import logging

import pytest

from memberships.events import Event, EventDispatcher, EventName, RecordingDispatcher


def test_required_payload_fields():
    with pytest.raises(ValueError):
        Event(name=EventName.SUBSCRIPTION_STATE_CHANGED, payload={"subscription_id": "sub-1"})


def test_payload_is_read_only():
    event = Event(name="invoice.settled", payload={"invoice_id": "inv-1", "status": "paid"})

    assert event.name is EventName.INVOICE_SETTLED
    with pytest.raises(TypeError):
        event.payload["status"] = "refunded"


def test_handlers_receive_events():
    dispatcher = EventDispatcher(log_events=False)
    received = []
    dispatcher.subscribe(EventName.INVOICE_SETTLED, received.append)

    dispatcher.emit(EventName.INVOICE_SETTLED, invoice_id="inv-1", status="paid")
    dispatcher.emit(EventName.ACCESS_DENIED, member_id=None, content_id="x", reason="no_active_subscription")

    assert [event.payload["invoice_id"] for event in received] == ["inv-1"]


def test_failing_handler_is_logged_not_raised(caplog):
    dispatcher = EventDispatcher(log_events=False)
    later = []

    def broken(event):
        raise RuntimeError("boom")

    dispatcher.subscribe(EventName.INVOICE_SETTLED, broken)
    dispatcher.subscribe(EventName.INVOICE_SETTLED, later.append)

    with caplog.at_level(logging.ERROR, logger="memberships.events"):
        dispatcher.emit(EventName.INVOICE_SETTLED, invoice_id="inv-1", status="paid")

    assert "Event handler failed" in caplog.text
    assert len(later) == 1


def test_default_dispatcher_logs_events(caplog):
    with caplog.at_level(logging.INFO, logger="memberships.events"):
        EventDispatcher().emit(EventName.INVOICE_SETTLED, invoice_id="inv-1", status="paid")

    assert "Membership event" in caplog.text


def test_recording_dispatcher_filters_by_name():
    dispatcher = RecordingDispatcher()
    dispatcher.emit(EventName.INVOICE_SETTLED, invoice_id="inv-1", status="paid")
    dispatcher.emit(
        EventName.SUBSCRIPTION_STATE_CHANGED, subscription_id="sub-1", member_id="alice", old="pending", new="active"
    )

    assert len(dispatcher.events) == 2
    assert [event.payload["new"] for event in dispatcher.named("subscription.state_changed")] == ["active"]
