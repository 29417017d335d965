from conftest import create_account, create_invoice


def _credit_note(client, account_id, amount="30.00", **extra):
    payload = {"account_id": account_id, "amount": amount, "reason": "PRICING_ERROR"}
    payload.update(extra)
    r = client.post("/api/credit-notes", json=payload)
    assert r.status_code == 201, r.json
    return r.json["credit_note"]


def test_issue_credit_note(admin_client):
    acct = create_account(admin_client)
    cn = _credit_note(admin_client, acct["id"])
    assert cn["number"] == "CN-000001"
    assert cn["status"] == "PENDING"
    assert cn["remaining_amount"] == 30.0

    r = admin_client.post("/api/credit-notes", json={"account_id": acct["id"], "amount": "10", "reason": "WHIM"})
    assert r.status_code == 400
    r = admin_client.post("/api/credit-notes", json={"account_id": acct["id"], "amount": "0", "reason": "OTHER"})
    assert r.status_code == 400


def test_apply_partially_then_fully(admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "100.00"}])
    cn = _credit_note(admin_client, acct["id"], amount="100.00")

    r = admin_client.post(f"/api/credit-notes/{cn['id']}/apply", json={"invoice_id": inv["id"], "amount": "40.00"})
    assert r.status_code == 200
    assert r.json["credit_note"]["status"] == "PARTIALLY_APPLIED"
    assert r.json["credit_note"]["remaining_amount"] == 60.0
    assert r.json["invoice"]["payment_status"] == "PARTIALLY_PAID"

    r = admin_client.post(f"/api/credit-notes/{cn['id']}/apply", json={"invoice_id": inv["id"], "amount": "60.00"})
    assert r.json["credit_note"]["status"] == "FULLY_APPLIED"
    assert r.json["invoice"]["payment_status"] == "PAID"
    assert r.json["invoice"]["paid_date"] is not None

    detail = admin_client.get(f"/api/invoices/{inv['id']}").json["invoice"]
    assert [c["amount"] for c in detail["credit_applications"]] == [40.0, 60.0]
    assert detail["amount_paid"] == 100.0

    r = admin_client.post(f"/api/credit-notes/{cn['id']}/apply", json={"invoice_id": inv["id"], "amount": "1.00"})
    assert r.status_code == 409


def test_apply_limits(admin_client):
    acct = create_account(admin_client)
    other = create_account(admin_client, "Someone Else")
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "20.00"}])
    cn = _credit_note(admin_client, acct["id"], amount="50.00")

    r = admin_client.post(f"/api/credit-notes/{cn['id']}/apply", json={"invoice_id": inv["id"], "amount": "30.00"})
    assert r.status_code == 400
    assert r.json["error"] == "Amount exceeds the invoice amount due"

    r = admin_client.post(f"/api/credit-notes/{cn['id']}/apply", json={"invoice_id": inv["id"], "amount": "60.00"})
    assert r.status_code == 400

    foreign = create_invoice(admin_client, other["id"], [{"description": "Work", "quantity": 1, "unit_price": "20.00"}])
    r = admin_client.post(f"/api/credit-notes/{cn['id']}/apply", json={"invoice_id": foreign["id"], "amount": "5.00"})
    assert r.status_code == 400
    assert r.json["error"] == "Invoice belongs to a different account"


def test_credit_plus_payment_settles_invoice(admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "100.00"}])
    cn = _credit_note(admin_client, acct["id"], amount="25.00")
    admin_client.post(f"/api/credit-notes/{cn['id']}/apply", json={"invoice_id": inv["id"], "amount": "25.00"})
    r = admin_client.post(
        "/api/payments",
        json={"account_id": acct["id"], "amount": "75.00", "method": "CASH", "allocations": [{"invoice_id": inv["id"], "amount": "75.00"}]},
    )
    assert r.status_code == 201
    assert r.json["invoices_paid"] == [inv["number"]]


def test_void_credit_note(admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "100.00"}])
    unused = _credit_note(admin_client, acct["id"])
    used = _credit_note(admin_client, acct["id"])
    admin_client.post(f"/api/credit-notes/{used['id']}/apply", json={"invoice_id": inv["id"], "amount": "10.00"})

    r = admin_client.post(f"/api/credit-notes/{unused['id']}/void", json={"reason": "Issued in error"})
    assert r.status_code == 200
    assert r.json["credit_note"]["status"] == "VOID"
    assert r.json["credit_note"]["remaining_amount"] == 0.0
    assert admin_client.post(f"/api/credit-notes/{used['id']}/void").status_code == 409

    r = admin_client.post(f"/api/credit-notes/{unused['id']}/apply", json={"invoice_id": inv["id"], "amount": "1.00"})
    assert r.status_code == 409


def test_credit_notes_list_filters(admin_client):
    acct = create_account(admin_client)
    _credit_note(admin_client, acct["id"])
    _credit_note(admin_client, acct["id"], reason="GOODWILL")
    assert len(admin_client.get("/api/credit-notes?reason=GOODWILL").json["credit_notes"]) == 1
    assert admin_client.get("/api/credit-notes?reason=NOPE").status_code == 400
