from datetime import datetime
from decimal import Decimal

from app.bizops.db import session_scope
from app.bizops.modules.notifications import messages
from app.bizops.modules.notifications.models import NotificationLog
from app.bizops.modules.notifications.service import Recipient, format_money, notify, send_email, send_sms
from app.bizops.modules.notifications.transports import EmailConfig, build_email, text_to_html

from conftest import login, org_id


def test_settings_defaults_and_update(admin_client):
    settings = admin_client.get("/api/settings").json["settings"]
    assert settings["quotation_reminders_enabled"] == "false"
    assert settings["smtp_port"] == "587"

    r = admin_client.put(
        "/api/settings",
        json={"company_name": "Acme Ghana", "smtp_password": "hunter2", "invoice_reminder_days_after_due": "3", "currency": "usd"},
    )
    assert r.status_code == 200
    assert r.json["changed"] == ["company_name", "currency", "invoice_reminder_days_after_due", "smtp_password"]
    assert r.json["settings"]["smtp_password"] == "********"
    assert r.json["settings"]["currency"] == "USD"

    # the masked value sent back means "unchanged"
    r = admin_client.put("/api/settings", json={"smtp_password": "********", "company_name": "Acme Ghana"})
    assert r.json["changed"] == []

    events = admin_client.get("/api/admin/audit?action=settings.update").json["events"]
    assert events[0]["metadata"]["changes"]["smtp_password"] == "********"


def test_settings_validation(admin_client):
    r = admin_client.put("/api/settings", json={"theme": "dark"})
    assert r.status_code == 400
    assert r.json["details"]["keys"] == ["theme"]
    assert admin_client.put("/api/settings", json={"invoice_reminders_enabled": "maybe"}).status_code == 400
    assert admin_client.put("/api/settings", json={"quotation_reminder_days": "-1"}).status_code == 400
    assert admin_client.put("/api/settings", json={"smtp_encryption": "starttls"}).status_code == 400


def test_viewer_cannot_read_settings(client):
    login(client, email="viewer@example.com")
    assert client.get("/api/settings").status_code == 403


def test_format_money():
    assert format_money(Decimal("1234.5"), "GHS") == "GH₵1,234.50"
    assert format_money(Decimal("1234.5"), "GHS", sms=True) == "GHS 1,234.50"
    assert format_money(5, "usd") == "$5.00"
    assert format_money(None, "EUR") == "EUR 0.00"


def test_payment_received_message():
    msg = messages.payment_received(
        company="Acme",
        customer_name="Kofi",
        payment_number="PAY-000001",
        method="CASH",
        received_at=datetime(2030, 1, 5),
        reference=None,
        amount=Decimal("100"),
        invoice_number="INV-000001",
        invoice_total=Decimal("100"),
        amount_due=Decimal("0"),
        currency="GHS",
    )
    assert msg.subject == "Payment Received - Invoice INV-000001"
    assert "fully paid" in msg.email_body
    assert "Reference:" not in msg.email_body
    assert "05 January 2030" in msg.email_body
    assert msg.sms_body.startswith("Payment of GHS 100.00 received")


def test_build_email():
    cfg = EmailConfig(host="smtp.example.com", port=587, username="u", password="p", from_address="billing@acme.test", from_name="Acme")
    msg = build_email(cfg, "kofi@example.com", "Hello", "Line one\nLine <two>")
    assert msg["From"] == "Acme <billing@acme.test>"
    assert msg["Message-ID"].endswith("@acme.test>")
    assert text_to_html("a\nb") == "a<br>b"


def test_dry_run_notify_logs_both_channels(app):
    acme = org_id(app)
    with app.app_context(), session_scope(app) as s:
        email_result, sms_result = notify(
            s, acme, Recipient("Kofi", "kofi@example.com", "+233 20 765 4321"),
            subject="Hi", email_body="Body", sms_body="Short", kind="test",
        )
        assert email_result.success and sms_result.success
        statuses = {(n.channel, n.status) for n in s.query(NotificationLog)}
    assert statuses == {("email", "dry_run"), ("sms", "dry_run")}


def test_sms_rejects_short_numbers(app):
    acme = org_id(app)
    with app.app_context(), session_scope(app) as s:
        result = send_sms(s, acme, "12345", "hello")
        assert not result.success
        assert result.error == "Invalid phone number format"
        assert s.query(NotificationLog).one().status == "failed"


def test_email_without_configuration_fails(app):
    app.config["NOTIFICATIONS_DRY_RUN"] = False
    acme = org_id(app)
    with app.app_context(), session_scope(app) as s:
        result = send_email(s, acme, "kofi@example.com", "Hi", "Body")
        assert result.error == "Email configuration not found"
        log = s.query(NotificationLog).one()
        assert log.status == "failed"
        assert log.error == "Email configuration not found"


def test_notification_logs_are_scoped(app, admin_client):
    acme, globex = org_id(app), org_id(app, "globex")
    with app.app_context(), session_scope(app) as s:
        send_email(s, acme, "a@example.com", "A", "Body", kind="test")
        send_email(s, globex, "g@example.com", "G", "Body", kind="test")

    logs = admin_client.get("/api/notifications/logs").json["logs"]
    assert [log["recipient"] for log in logs] == ["a@example.com"]
    assert admin_client.get("/api/notifications/logs?channel=sms").json["logs"] == []
