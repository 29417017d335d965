from datetime import date, datetime, timedelta

from app.bizops.db import session_scope
from app.bizops.modules.invoicing.models import Invoice
from app.bizops.modules.notifications.models import NotificationLog
from app.bizops.modules.projects.models import Task
from app.bizops.modules.reminders.service import categorize_tasks, run_job

from conftest import create_account, create_invoice


def _run(app, job, now=None, org_slug="acme"):
    with app.app_context(), session_scope(app) as s:
        return [r.to_dict() for r in run_job(s, job, org_slug=org_slug, now=now)]


def _enable(client, **values):
    r = client.put("/api/settings", json=values)
    assert r.status_code == 200, r.json


def test_disabled_sweeps_do_nothing(app):
    results = _run(app, "quotation-reminders", org_slug=None)
    assert [r["organization"] for r in results] == ["acme", "globex"]
    assert all(r["enabled"] is False and r["total"] == 0 for r in results)


def test_quotation_reminders(app, admin_client):
    acct = create_account(admin_client)
    admin_client.post(
        "/api/quotations",
        json={"subject": "Fit-out", "account_id": acct["id"], "lines": [{"description": "Desk", "quantity": 1, "unit_price": "100"}]},
    )
    _enable(admin_client, quotation_reminders_enabled=True, quotation_reminder_days=0)

    now = datetime.utcnow() + timedelta(minutes=1)
    (result,) = _run(app, "quotation-reminders", now=now)
    assert result["enabled"] is True
    assert result["success"] == 1
    assert result["errors"] == 0

    # interval not yet elapsed
    (again,) = _run(app, "quotation-reminders", now=now)
    assert again["total"] == 0

    logs = admin_client.get("/api/notifications/logs?kind=quotation_reminder").json["logs"]
    assert {log["channel"] for log in logs} == {"email", "sms"}
    assert all(log["status"] == "dry_run" for log in logs)
    q = admin_client.get("/api/quotations").json["quotations"][0]
    assert q["reminder_count"] == 1


def test_invoice_reminders_mark_overdue_first(app, admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "80.00"}])
    assert admin_client.post(f"/api/invoices/{inv['id']}/send").status_code == 200
    _enable(admin_client, invoice_reminders_enabled=True)

    (result,) = _run(app, "invoice-reminders", now=datetime(2030, 3, 1, 8, 0))
    assert result["success"] == 1
    with session_scope(app) as s:
        invoice = s.get(Invoice, inv["id"])
        assert invoice.status == "OVERDUE"
        assert invoice.reminder_count == 1
        body = s.query(NotificationLog).filter(NotificationLog.kind == "invoice_reminder", NotificationLog.channel == "email").one().body
        assert inv["number"] in body


def test_invoice_reminder_waits_out_the_full_interval(app, admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "80.00"}])
    admin_client.post(f"/api/invoices/{inv['id']}/send")
    _enable(admin_client, invoice_reminders_enabled=True, invoice_reminder_interval_days=7)

    first = datetime(2030, 3, 1, 8, 0)
    assert _run(app, "invoice-reminders", now=first)[0]["success"] == 1
    assert _run(app, "invoice-reminders", now=first + timedelta(days=7))[0]["total"] == 0
    assert _run(app, "invoice-reminders", now=first + timedelta(days=7, minutes=1))[0]["success"] == 1
    with session_scope(app) as s:
        assert s.get(Invoice, inv["id"]).reminder_count == 2


def test_unreachable_customer_is_skipped(app, admin_client):
    acct = create_account(admin_client, email="", phone="")
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "80.00"}])
    admin_client.post(f"/api/invoices/{inv['id']}/send")
    _enable(admin_client, invoice_reminders_enabled=True)
    (result,) = _run(app, "invoice-reminders", now=datetime(2030, 3, 1))
    assert result["skipped"] == 1
    assert result["success"] == 0


def test_task_digest_sent_once_per_day(app, admin_client):
    me = admin_client.get("/auth/me").json["user"]
    admin_client.post("/api/tasks", json={"title": "Count stock", "due_date": "2020-01-01", "assignee_ids": [me["id"]]})
    admin_client.post("/api/tasks", json={"title": "Old chore", "status": "COMPLETED", "assignee_ids": [me["id"]]})
    _enable(admin_client, daily_task_reminders_enabled=True)

    now = datetime.utcnow()
    (first,) = _run(app, "daily-task-reminders", now=now)
    assert first["success"] == 1
    (second,) = _run(app, "daily-task-reminders", now=now)
    assert second["success"] == 0
    assert second["skipped"] == 1

    logs = admin_client.get("/api/notifications/logs?kind=task_digest&channel=email").json["logs"]
    assert len(logs) == 1
    assert "Count stock" in logs[0]["body"]
    assert "Old chore" not in logs[0]["body"]


def test_categorize_tasks():
    today = date(2030, 1, 10)
    tasks = [
        Task(id=1, title="Late", due_date=date(2030, 1, 1), priority="HIGH"),
        Task(id=2, title="Today", due_date=today, priority="LOW"),
        Task(id=3, title="Someday", due_date=None, priority="MEDIUM"),
        Task(id=4, title="Next week", due_date=date(2030, 1, 17), priority="MEDIUM"),
    ]
    overdue, due_today, upcoming = categorize_tasks(tasks, today)
    assert [t.title for t in overdue] == ["Late"]
    assert [t.title for t in due_today] == ["Today"]
    assert [t.title for t in upcoming] == ["Next week", "Someday"]


def test_cron_endpoints(app, client):
    assert client.get("/api/cron/invoice-reminders").json == {"ok": True, "job": "invoice-reminders"}
    assert client.get("/api/cron/nightly-backup").status_code == 404
    assert client.post("/api/cron/nightly-backup").status_code == 404

    r = client.post("/api/cron/daily-task-reminders")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert len(r.json["results"]) == 2
    assert r.json["success"] == 0

    r = client.post("/api/cron/daily-task-reminders?org=acme")
    assert [x["organization"] for x in r.json["results"]] == ["acme"]
    assert client.post("/api/cron/daily-task-reminders?org=nowhere").status_code == 404


def test_cron_requires_bearer_secret(app, client):
    app.config["CRON_SECRET"] = "s3cret"
    assert client.post("/api/cron/quotation-reminders").status_code == 401
    r = client.post("/api/cron/quotation-reminders", headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401
    r = client.post("/api/cron/quotation-reminders", headers={"Authorization": "Bearer s3cret"})
    assert r.status_code == 200
    # liveness check stays open
    assert client.get("/api/cron/quotation-reminders").status_code == 200
