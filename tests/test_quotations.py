from app.bizops.db import session_scope
from app.bizops.modules.notifications.models import NotificationLog
from app.bizops.modules.quotations.service import can_transition

from conftest import create_account, create_product


def _quotation(client, account_id, **extra):
    payload = {
        "subject": "Office fit-out",
        "account_id": account_id,
        "lines": [
            {"description": "Desk", "quantity": 2, "unit_price": "150.00", "taxes": [{"name": "VAT", "rate": "10"}]},
            {"description": "Chair", "quantity": 4, "unit_price": "40.00", "discount_percent": "25"},
        ],
    }
    payload.update(extra)
    r = client.post("/api/quotations", json=payload)
    assert r.status_code == 201, r.json
    return r.json["quotation"]


def test_create_quotation_prices_lines(admin_client):
    acct = create_account(admin_client)
    q = _quotation(admin_client, acct["id"])
    assert q["number"] == "QT-000001"
    assert q["status"] == "DRAFT"
    assert q["currency"] == "GHS"
    # 300 + (160 - 40) = 420; tax 30
    assert q["subtotal"] == 420.0
    assert q["discount"] == 40.0
    assert q["tax"] == 30.0
    assert q["total"] == 450.0
    assert len(q["lines"]) == 2

    second = _quotation(admin_client, acct["id"])
    assert second["number"] == "QT-000002"


def test_quotation_requires_customer_and_lines(admin_client):
    r = admin_client.post("/api/quotations", json={"subject": "X", "lines": [{"description": "a", "quantity": 1, "unit_price": 1}]})
    assert r.status_code == 400
    assert r.json["error"] == "Customer is required"

    acct = create_account(admin_client)
    r = admin_client.post("/api/quotations", json={"subject": "X", "account_id": acct["id"], "lines": []})
    assert r.status_code == 400


def test_line_fills_from_product(admin_client):
    acct = create_account(admin_client)
    product = create_product(admin_client, sku="LAMP", unit_price="75.50")
    q = _quotation(admin_client, acct["id"], lines=[{"product_id": product["id"], "quantity": 2}])
    assert q["total"] == 151.0
    assert q["lines"][0]["sku"] == "LAMP"


def test_send_quotation_marks_sent_and_logs_email(app, admin_client):
    acct = create_account(admin_client)
    q = _quotation(admin_client, acct["id"])
    r = admin_client.post(f"/api/quotations/{q['id']}/send")
    assert r.status_code == 200
    assert r.json["quotation"]["status"] == "SENT"
    assert r.json["email"]["success"] is True

    with session_scope(app) as s:
        logs = s.query(NotificationLog).filter(NotificationLog.kind == "quotation_sent").all()
        assert len(logs) == 1
        assert logs[0].status == "dry_run"
        assert logs[0].recipient == "kofi@example.com"


def test_status_transitions(admin_client):
    assert can_transition("DRAFT", "SENT")
    assert not can_transition("ACCEPTED", "SENT")
    acct = create_account(admin_client)
    q = _quotation(admin_client, acct["id"])
    r = admin_client.post(f"/api/quotations/{q['id']}/status", json={"status": "ACCEPTED"})
    assert r.status_code == 409


def test_only_draft_can_be_deleted(admin_client):
    acct = create_account(admin_client)
    q = _quotation(admin_client, acct["id"])
    admin_client.post(f"/api/quotations/{q['id']}/send")
    assert admin_client.delete(f"/api/quotations/{q['id']}").status_code == 409


def test_convert_to_invoice_once(admin_client):
    acct = create_account(admin_client)
    q = _quotation(admin_client, acct["id"])
    r = admin_client.post(f"/api/quotations/{q['id']}/convert", json={"due_date": "2030-02-01"})
    assert r.status_code == 201
    assert r.json["quotation"]["status"] == "ACCEPTED"
    assert r.json["invoice"]["total"] == 450.0

    inv = admin_client.get(f"/api/invoices/{r.json['invoice']['id']}").json["invoice"]
    assert inv["status"] == "DRAFT"
    assert inv["quotation_id"] == q["id"]
    assert inv["due_date"] == "2030-02-01"
    assert len(inv["lines"]) == 2

    again = admin_client.post(f"/api/quotations/{q['id']}/convert")
    assert again.status_code == 409


def test_paying_converted_invoice_wins_opportunity(admin_client):
    acct = create_account(admin_client)
    opp = admin_client.post("/api/crm/opportunities", json={"name": "Fit-out", "account_id": acct["id"]}).json["opportunity"]
    q = _quotation(admin_client, acct["id"], opportunity_id=opp["id"])
    inv = admin_client.post(f"/api/quotations/{q['id']}/convert").json["invoice"]

    r = admin_client.post(
        "/api/payments",
        json={"account_id": acct["id"], "amount": "450.00", "method": "CASH", "allocations": [{"invoice_id": inv["id"], "amount": "450.00"}]},
    )
    assert r.status_code == 201
    won = admin_client.get(f"/api/crm/opportunities/{opp['id']}").json["opportunity"]
    assert won["stage"] == "WON"
    assert won["value"] == 450.0
