from datetime import datetime, timedelta, timezone

import pytest

from tradie_sms import conversations, outbound
from tradie_sms.datastore import MSG, REPOSITORY, insert_record
from tradie_sms.errors import NotFoundError, ValidationError
from tradie_sms.gateway import FAILED, SIMULATED, GatewayResult
from tradie_sms.runtime import to_iso
from tradie_sms.schema import BUSINESS_SETTINGS_TABLE, CLIENTS_TABLE


def test_send_success_records_sent_message(gateway):
    msg = outbound.send("t1", "0412 345 678", "Hello there", "user-1", gateway=gateway)

    assert msg.status == "sent"
    assert msg.gateway_message_id == "SM0001"
    assert msg.simulated is False
    assert gateway.calls[0]["to"] == "+61412345678"
    conv = conversations.get(msg.conversation_id)
    assert conv.last_message_at is not None


def test_send_failure_keeps_failed_row_and_updates_timestamp(failing_gateway):
    msg = outbound.send("t1", "0412345678", "Hello", "user-1", gateway=failing_gateway)

    assert msg.status == "failed"
    assert msg.error_message == "carrier rejected"
    stored = REPOSITORY.messages_for_conversation(msg.conversation_id)
    assert len(stored) == 1
    assert conversations.get(msg.conversation_id).last_message_at is not None


def test_gateway_exception_becomes_failed(make_gateway):
    gw = make_gateway(raises=ConnectionError("socket closed"))

    msg = outbound.send("t1", "0412345678", "Hello", "user-1", gateway=gw)

    assert msg.status == "failed"
    assert "socket closed" in msg.error_message
    assert len(REPOSITORY.messages_for_conversation(msg.conversation_id)) == 1


def test_pending_row_exists_before_gateway_is_called():
    seen = {}

    class InspectingGateway:
        def send(self, to_phone, body, media_urls=None):
            conv = REPOSITORY.find_conversation("t1", to_phone)
            rows = REPOSITORY.messages_for_conversation(conv["id"])
            seen["statuses"] = [r["fields"][MSG["STATUS"]] for r in rows]
            return GatewayResult("sent", external_id="SMX")

    outbound.send("t1", "0412345678", "Hi", "user-1", gateway=InspectingGateway())

    assert seen["statuses"] == ["pending"]


def test_simulated_result_is_flagged(make_gateway):
    gw = make_gateway(results=[GatewayResult(SIMULATED, external_id="SIM123")])

    msg = outbound.send("t1", "0412345678", "Hi", "user-1", gateway=gw)

    assert msg.status == "sent"
    assert msg.simulated is True


def test_validation_happens_before_persistence(gateway):
    with pytest.raises(ValidationError):
        outbound.send("t1", "0412345678", "   ", "user-1", gateway=gateway)
    with pytest.raises(ValidationError):
        outbound.send("t1", "", "Hello", "user-1", gateway=gateway)

    assert REPOSITORY.all_live_conversations() == []
    assert gateway.calls == []


def test_quick_action_tag_and_media_pass_through(gateway):
    msg = outbound.send(
        "t1",
        "0412345678",
        "On my way",
        "user-1",
        is_quick_action=True,
        quick_action_tag="on_my_way",
        media_urls=["https://example.com/a.jpg"],
        gateway=gateway,
    )

    assert msg.is_quick_action is True
    assert msg.quick_action_type == "on_my_way"
    assert msg.media_urls == ["https://example.com/a.jpg"]
    assert gateway.calls[0]["media_urls"] == ["https://example.com/a.jpg"]


def test_reconcile_pending_fails_stale_rows():
    conv = conversations.resolve("t1", "0412345678")
    now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    stale = REPOSITORY.create_message(
        {
            MSG["CONVERSATION_ID"]: conv.id,
            MSG["DIRECTION"]: "outbound",
            MSG["STATUS"]: "pending",
            MSG["CREATED_AT"]: to_iso(now - timedelta(hours=1)),
        }
    )
    fresh = REPOSITORY.create_message(
        {
            MSG["CONVERSATION_ID"]: conv.id,
            MSG["DIRECTION"]: "outbound",
            MSG["STATUS"]: "pending",
            MSG["CREATED_AT"]: to_iso(now - timedelta(minutes=2)),
        }
    )

    result = outbound.reconcile_pending(timedelta(minutes=15), now=now)

    assert result["processed"] == 1
    assert REPOSITORY.get_message(stale["id"])["fields"][MSG["STATUS"]] == FAILED
    assert REPOSITORY.get_message(fresh["id"])["fields"][MSG["STATUS"]] == "pending"


def test_terminal_status_never_reverts_to_pending(gateway):
    msg = outbound.send("t1", "0412345678", "Hi", "user-1", gateway=gateway)
    with pytest.raises(ValidationError):
        REPOSITORY.set_message_status(msg.id, "pending")


def test_terminal_status_is_never_overwritten(gateway, failing_gateway):
    sent = outbound.send("t1", "0412345678", "Hi", "user-1", gateway=gateway)
    failed = outbound.send("t1", "0412345678", "Hi again", "user-1", gateway=failing_gateway)

    with pytest.raises(ValidationError):
        REPOSITORY.set_message_status(sent.id, "failed")
    with pytest.raises(ValidationError):
        REPOSITORY.set_message_status(failed.id, "sent")

    assert REPOSITORY.get_message(sent.id)["fields"][MSG["STATUS"]] == "sent"
    assert REPOSITORY.get_message(failed.id)["fields"][MSG["STATUS"]] == "failed"


def test_reconciled_message_keeps_failed_when_slow_send_completes():
    later = datetime.now(timezone.utc) + timedelta(hours=2)

    class SlowGateway:
        def send(self, to_phone, body, media_urls=None):
            outbound.reconcile_pending(timedelta(minutes=15), now=later)
            return GatewayResult("sent", external_id="SMLATE")

    msg = outbound.send("t1", "0412345678", "Hi", "user-1", gateway=SlowGateway())

    assert msg.status == "failed"
    assert "No gateway result" in msg.error_message
    assert outbound.reconcile_pending(timedelta(minutes=15), now=later)["processed"] == 0


def test_notification_uses_client_and_business_records(gateway):
    client = insert_record(CLIENTS_TABLE, {"Tenant ID": "t1", "Name": "Sam", "Phone": "0412345678"})
    insert_record(BUSINESS_SETTINGS_TABLE, {"Tenant ID": "t1", "Business Name": "Acme Plumbing"})

    msg = outbound.send_notification("t1", client["id"], "payment_received", {"amount": 250}, gateway=gateway)

    assert msg.status == "sent"
    assert gateway.calls[0]["to"] == "+61412345678"
    assert gateway.calls[0]["body"] == "Thanks Sam! We received your payment of $250.00. - Acme Plumbing"
    assert conversations.get(msg.conversation_id).client_id == client["id"]


def test_notification_rejects_unknown_template_and_missing_client(gateway):
    client = insert_record(CLIENTS_TABLE, {"Tenant ID": "t1", "Name": "Sam", "Phone": "0412345678"})

    with pytest.raises(ValidationError):
        outbound.send_notification("t1", client["id"], "birthday", gateway=gateway)
    with pytest.raises(ValidationError):
        outbound.send_notification("t1", client["id"], "quote_ready", gateway=gateway)
    with pytest.raises(NotFoundError):
        outbound.send_notification("t2", client["id"], "job_complete", gateway=gateway)

    assert gateway.calls == []
