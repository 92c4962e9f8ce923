import threading
from datetime import datetime, timedelta, timezone

import pytest

from tradie_sms import automation
from tradie_sms.datastore import LOG, REPOSITORY, insert_record
from tradie_sms.errors import ValidationError
from tradie_sms.gateway import FAILED, GatewayResult
from tradie_sms.runtime import to_iso
from tradie_sms.schema import (
    AUTOMATION_RULES_TABLE,
    BUSINESS_SETTINGS_TABLE,
    CLIENTS_TABLE,
    INVOICES_TABLE,
    JOBS_TABLE,
    QUOTES_TABLE,
)

NOW = datetime(2025, 6, 10, 2, 0, tzinfo=timezone.utc)  # 12:00 pm in Sydney


def _client(tenant="t1", phone="0412345678", name="Alex"):
    return insert_record(CLIENTS_TABLE, {"Tenant ID": tenant, "Name": name, "Phone": phone})


def _quote(client_id, days_ago=4, status="sent", tenant="t1"):
    return insert_record(
        QUOTES_TABLE,
        {
            "Tenant ID": tenant,
            "Client ID": client_id,
            "Number": "Q-1001",
            "Total": 1250.5,
            "Status": status,
            "Sent At": to_iso(NOW - timedelta(days=days_ago)),
        },
    )


def _logs():
    return REPOSITORY.automation_logs()


def test_create_rule_rejects_unknown_trigger():
    with pytest.raises(ValidationError):
        automation.create_rule("t1", "Bad", "quote_forgotten")


def test_quote_follow_up_sends_once_across_passes(gateway):
    insert_record(BUSINESS_SETTINGS_TABLE, {"Tenant ID": "t1", "Business Name": "Bright Sparks"})
    client = _client()
    quote = _quote(client["id"])
    rule = automation.create_rule("t1", "Follow up", "quote_follow_up")

    first = automation.evaluate_rules(now=NOW, gateway=gateway)
    second = automation.evaluate_rules(now=NOW, gateway=gateway)

    assert first.sent == 1
    assert second.sent == 0
    assert second.duplicates == 1
    assert len(gateway.calls) == 1
    body = gateway.calls[0]["body"]
    assert "Q-1001" in body and "$1250.50" in body and "Bright Sparks" in body and "Alex" in body

    logs = _logs()
    assert len(logs) == 1
    f = logs[0]["fields"]
    assert f[LOG["STATUS"]] == "sent"
    assert f[LOG["ENTITY_ID"]] == quote["id"]
    assert f[LOG["MESSAGE_ID"]]

    stored_rule = REPOSITORY.get_rule(rule.id)["fields"]
    assert stored_rule[AUTOMATION_RULES_TABLE.field_name("TRIGGER_COUNT")] == 1
    assert stored_rule[AUTOMATION_RULES_TABLE.field_name("LAST_TRIGGERED_AT")]


def test_quote_not_yet_due_or_accepted_is_ignored(gateway):
    client = _client()
    _quote(client["id"], days_ago=1)
    _quote(client["id"], days_ago=10, status="accepted")
    automation.create_rule("t1", "Follow up", "quote_follow_up")

    report = automation.evaluate_rules(now=NOW, gateway=gateway)

    assert report.sent == 0
    assert gateway.calls == []
    assert _logs() == []


def test_client_without_phone_is_skipped_and_logged(gateway):
    client = _client(phone="")
    _quote(client["id"])
    automation.create_rule("t1", "Follow up", "quote_follow_up")

    report = automation.evaluate_rules(now=NOW, gateway=gateway)
    again = automation.evaluate_rules(now=NOW, gateway=gateway)

    assert report.skipped == 1
    assert again.skipped == 0
    assert gateway.calls == []
    assert [rec["fields"][LOG["STATUS"]] for rec in _logs()] == ["skipped"]


def test_gateway_failure_is_logged_failed(make_gateway):
    gw = make_gateway(results=[GatewayResult(FAILED, error="carrier rejected")])
    client = _client()
    _quote(client["id"])
    automation.create_rule("t1", "Follow up", "quote_follow_up")

    report = automation.evaluate_rules(now=NOW, gateway=gw)

    assert report.failed == 1
    log = _logs()[0]["fields"]
    assert log[LOG["STATUS"]] == "failed"
    assert log[LOG["ERROR"]] == "carrier rejected"


def test_invoice_overdue_uses_custom_message(gateway):
    client = _client(name="Jo")
    insert_record(
        INVOICES_TABLE,
        {
            "Tenant ID": "t1",
            "Client ID": client["id"],
            "Number": "INV-7",
            "Total": "99",
            "Status": "overdue",
            "Due Date": to_iso(NOW - timedelta(days=2)),
        },
    )
    insert_record(
        INVOICES_TABLE,
        {"Tenant ID": "t1", "Client ID": client["id"], "Number": "INV-8", "Status": "sent",
         "Due Date": to_iso(NOW - timedelta(hours=3))},
    )
    automation.create_rule("t1", "Chase", "invoice_overdue", custom_message="{client_name}: {invoice_number} {invoice_total}")

    report = automation.evaluate_rules(now=NOW, gateway=gateway)

    assert report.sent == 1
    assert gateway.calls[0]["body"] == "Jo: INV-7 $99.00"


def test_job_reminder_matches_tomorrow_in_business_timezone(gateway):
    client = _client()
    # 2025-06-11 09:30 Sydney (UTC+10) is 23:30 UTC on the 10th.
    tomorrow_local = datetime(2025, 6, 10, 23, 30, tzinfo=timezone.utc)
    job = insert_record(
        JOBS_TABLE,
        {"Tenant ID": "t1", "Client ID": client["id"], "Title": "Hot water", "Site Address": "1 Main St",
         "Status": "Scheduled", "Scheduled At": to_iso(tomorrow_local)},
    )
    insert_record(
        JOBS_TABLE,
        {"Tenant ID": "t1", "Client ID": client["id"], "Title": "Later", "Status": "scheduled",
         "Scheduled At": to_iso(NOW + timedelta(days=3))},
    )
    automation.create_rule("t1", "Day before", "job_reminder_day_before")

    report = automation.evaluate_rules(now=NOW, gateway=gateway)

    assert report.sent == 1
    body = gateway.calls[0]["body"]
    assert "Hot water" in body and "9:30 am" in body and "11/06/2025" in body
    conv = REPOSITORY.find_conversation("t1", "+61412345678")
    assert conv["fields"]["Job ID"] == job["id"]


def test_inactive_and_malformed_rules_are_skipped(gateway):
    client = _client()
    _quote(client["id"])
    automation.create_rule("t1", "Off", "quote_follow_up", active=False)
    insert_record(AUTOMATION_RULES_TABLE, {"Tenant ID": "t1", "Name": "Broken", "Trigger Type": "mystery", "Active": True})

    report = automation.evaluate_rules(now=NOW, gateway=gateway)

    assert report.rules == 0
    assert gateway.calls == []


def test_one_entity_failure_does_not_stop_others(monkeypatch, gateway):
    good = _client(phone="0411111111")
    bad = _client(phone="0422222222")
    _quote(bad["id"])
    _quote(good["id"])
    automation.create_rule("t1", "Follow up", "quote_follow_up")

    real_send = automation.outbound.send

    def flaky_send(tenant_id, phone, *args, **kwargs):
        if phone == "0422222222":
            raise RuntimeError("datastore hiccup")
        return real_send(tenant_id, phone, *args, **kwargs)

    monkeypatch.setattr(automation.outbound, "send", flaky_send)

    report = automation.evaluate_rules(now=NOW, gateway=gateway)

    assert report.sent == 1
    assert report.failed == 1
    assert len(report.errors) == 1
    statuses = sorted(rec["fields"][LOG["STATUS"]] for rec in _logs())
    assert statuses == ["failed", "sent"]


def test_overlapping_passes_send_once(gateway):
    client = _client()
    _quote(client["id"])
    automation.create_rule("t1", "Follow up", "quote_follow_up")
    barrier = threading.Barrier(4)
    reports = []

    def run():
        barrier.wait()
        reports.append(automation.evaluate_rules(now=NOW, gateway=gateway))

    threads = [threading.Thread(target=run) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(r.sent for r in reports) == 1
    assert len(gateway.calls) == 1
    assert len(_logs()) == 1


def test_tenant_read_error_does_not_stop_other_tenants(monkeypatch, gateway):
    automation.create_rule("t1", "Follow up", "quote_follow_up")
    automation.create_rule("t2", "Follow up", "quote_follow_up")
    client = _client(tenant="t2")
    _quote(client["id"], tenant="t2")

    real_business_name = REPOSITORY.business_name

    def business_name(tenant_id):
        if tenant_id == "t1":
            raise RuntimeError("settings table 500")
        return real_business_name(tenant_id)

    monkeypatch.setattr(REPOSITORY, "business_name", business_name)

    report = automation.evaluate_rules(now=NOW, gateway=gateway)

    assert report.tenants == 2
    assert report.sent == 1
    assert len(report.errors) == 1
    assert report.errors[0].startswith("t1:")


def test_client_lookup_error_is_logged_as_failed(monkeypatch, gateway):
    client = _client()
    quote = _quote(client["id"])
    automation.create_rule("t1", "Follow up", "quote_follow_up")

    def broken_get_client(tenant_id, client_id):
        raise RuntimeError("clients table timeout")

    real_get_client = REPOSITORY.get_client
    monkeypatch.setattr(REPOSITORY, "get_client", broken_get_client)

    report = automation.evaluate_rules(now=NOW, gateway=gateway)

    assert report.failed == 1
    assert gateway.calls == []
    logs = _logs()
    assert len(logs) == 1
    assert logs[0]["fields"][LOG["STATUS"]] == "failed"
    assert logs[0]["fields"][LOG["ENTITY_ID"]] == quote["id"]
    assert "clients table timeout" in logs[0]["fields"][LOG["ERROR"]]

    monkeypatch.setattr(REPOSITORY, "get_client", real_get_client)
    again = automation.evaluate_rules(now=NOW, gateway=gateway)
    assert again.duplicates == 1
    assert gateway.calls == []
