from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.exc import SAWarning

from app.bizops import utils
from app.bizops.db import session_scope
from app.bizops.modules.catalog.models import StockMovement
from app.bizops.modules.invoicing.models import Invoice, Payment
from app.bizops.modules.invoicing.service import mark_overdue

from conftest import create_account, create_invoice, create_product, org_id


def _pay(client, account_id, amount, allocations, method="BANK_TRANSFER"):
    return client.post(
        "/api/payments",
        json={"account_id": account_id, "amount": amount, "method": method, "reference": "TX-1", "allocations": allocations},
    )


def test_create_invoice_defaults(admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "Consulting", "quantity": 2, "unit_price": "125.00"}])
    assert inv["number"] == "INV-000001"
    assert inv["status"] == "DRAFT"
    assert inv["payment_status"] == "UNPAID"
    assert inv["total"] == 250.0
    assert inv["amount_due"] == 250.0
    assert inv["paid_date"] is None


def test_create_invoice_validation(admin_client):
    acct = create_account(admin_client)
    lines = [{"description": "x", "quantity": 1, "unit_price": 1}]
    r = admin_client.post("/api/invoices", json={"subject": "X", "account_id": acct["id"], "lines": lines})
    assert r.status_code == 400
    assert r.json["error"] == "Due date is required"
    r = admin_client.post(
        "/api/invoices",
        json={"subject": "X", "account_id": acct["id"], "lines": lines, "issue_date": "2030-02-01", "due_date": "2030-01-01"},
    )
    assert r.status_code == 400


def test_lines_only_editable_while_draft(admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "A", "quantity": 1, "unit_price": "10"}])
    r = admin_client.patch(f"/api/invoices/{inv['id']}", json={"lines": [{"description": "B", "quantity": 3, "unit_price": "10"}]})
    assert r.status_code == 200
    assert r.json["invoice"]["total"] == 30.0

    assert admin_client.post(f"/api/invoices/{inv['id']}/send").json["invoice"]["status"] == "SENT"
    r = admin_client.patch(f"/api/invoices/{inv['id']}", json={"lines": [{"description": "C", "quantity": 1, "unit_price": "1"}]})
    assert r.status_code == 409


def test_partial_then_full_payment(admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "100.00"}])

    r = _pay(admin_client, acct["id"], "40.00", [{"invoice_id": inv["id"], "amount": "40.00"}])
    assert r.status_code == 201
    assert r.json["payment"]["number"] == "PAY-000001"
    assert r.json["invoices_paid"] == []
    partial = admin_client.get(f"/api/invoices/{inv['id']}").json["invoice"]
    assert partial["payment_status"] == "PARTIALLY_PAID"
    assert partial["amount_due"] == 60.0

    r = _pay(admin_client, acct["id"], "60.00", [{"invoice_id": inv["id"], "amount": "60.00"}])
    assert r.json["invoices_paid"] == [inv["number"]]
    paid = admin_client.get(f"/api/invoices/{inv['id']}").json["invoice"]
    assert paid["payment_status"] == "PAID"
    assert paid["amount_due"] == 0.0
    assert paid["paid_date"] == date.today().isoformat()
    assert len(paid["allocations"]) == 2


def test_over_allocation_rejected(admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "100.00"}])

    r = _pay(admin_client, acct["id"], "150.00", [{"invoice_id": inv["id"], "amount": "150.00"}])
    assert r.status_code == 400
    assert "exceeds the amount due" in r.json["error"]

    r = _pay(admin_client, acct["id"], "50.00", [{"invoice_id": inv["id"], "amount": "80.00"}])
    assert r.status_code == 400
    assert r.json["error"] == "Allocations exceed the payment amount"

    r = _pay(admin_client, acct["id"], "50.00", [{"invoice_id": inv["id"], "amount": "20"}, {"invoice_id": inv["id"], "amount": "20"}])
    assert r.status_code == 400


def test_payment_validation(admin_client):
    acct = create_account(admin_client)
    assert _pay(admin_client, acct["id"], "0", []).status_code == 400
    assert _pay(admin_client, acct["id"], "10", [], method="BITCOIN").status_code == 400
    r = admin_client.post("/api/payments", json={"amount": "10", "method": "CASH"})
    assert r.status_code == 400
    assert r.json["error"] == "Account is required"
    # unallocated payment on account is allowed
    assert _pay(admin_client, acct["id"], "10", []).status_code == 201


def test_paid_invoice_creates_sales_order_and_deducts_stock(app, admin_client):
    acct = create_account(admin_client)
    product = create_product(admin_client, sku="CHAIR", unit_price="40.00", stock="10")
    inv = create_invoice(admin_client, acct["id"], [{"product_id": product["id"], "quantity": 3}])
    assert inv["total"] == 120.0

    r = _pay(admin_client, acct["id"], "120.00", [{"invoice_id": inv["id"], "amount": "120.00"}])
    assert r.status_code == 201
    assert len(r.json["sales_orders"]) == 1

    orders = admin_client.get("/api/orders").json["orders"]
    assert len(orders) == 1
    assert orders[0]["invoice_id"] == inv["id"]
    assert orders[0]["source"] == "INVOICE"
    assert orders[0]["status"] == "PENDING"

    stock = admin_client.get(f"/api/catalog/products/{product['id']}").json["product"]["stock_quantity"]
    assert stock == 7.0

    with session_scope(app) as s:
        sales = s.query(StockMovement).filter(StockMovement.type == "SALE").all()
        assert [(m.reference, float(m.quantity)) for m in sales] == [(inv["number"], -3.0)]


def test_void_invoice(admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "100.00"}])
    paid = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "10.00"}])
    _pay(admin_client, acct["id"], "5.00", [{"invoice_id": paid["id"], "amount": "5.00"}])

    assert admin_client.post(f"/api/invoices/{paid['id']}/void").status_code == 409

    r = admin_client.post(f"/api/invoices/{inv['id']}/void", json={"reason": "Duplicate"})
    assert r.status_code == 200
    assert r.json["invoice"]["status"] == "VOID"
    assert admin_client.patch(f"/api/invoices/{inv['id']}", json={"notes": "x"}).status_code == 409
    r = _pay(admin_client, acct["id"], "5.00", [{"invoice_id": inv["id"], "amount": "5.00"}])
    assert r.status_code == 400


def test_invoice_list_filters(admin_client):
    acct = create_account(admin_client)
    a = create_invoice(admin_client, acct["id"], [{"description": "A", "quantity": 1, "unit_price": "10"}], subject="Alpha")
    create_invoice(admin_client, acct["id"], [{"description": "B", "quantity": 1, "unit_price": "99"}], subject="Beta")
    _pay(admin_client, acct["id"], "10", [{"invoice_id": a["id"], "amount": "10"}])

    r = admin_client.get("/api/invoices?payment_status=PAID")
    assert [i["subject"] for i in r.json["invoices"]] == ["Alpha"]
    r = admin_client.get("/api/invoices?q=beta")
    assert [i["subject"] for i in r.json["invoices"]] == ["Beta"]
    r = admin_client.get("/api/invoices?sort=total&order=desc")
    assert [i["subject"] for i in r.json["invoices"]] == ["Beta", "Alpha"]
    assert admin_client.get("/api/invoices?status=BOGUS").status_code == 400


def test_mark_overdue(app, admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "A", "quantity": 1, "unit_price": "10"}], due_date="2020-01-01", issue_date="2019-12-01")
    admin_client.post(f"/api/invoices/{inv['id']}/send")

    with session_scope(app) as s:
        assert mark_overdue(s, org_id(app), date.today()) == 1
        assert s.get(Invoice, inv["id"]).status == "OVERDUE"
        assert mark_overdue(s, org_id(app), date.today() - timedelta(days=1)) == 0


def test_payments_list_total(admin_client):
    acct = create_account(admin_client)
    _pay(admin_client, acct["id"], "10.00", [])
    _pay(admin_client, acct["id"], "15.50", [], method="CASH")
    r = admin_client.get("/api/payments")
    assert r.json["total_amount"] == 25.5
    r = admin_client.get("/api/payments?method=CASH")
    assert len(r.json["payments"]) == 1


def test_invoice_list_repairs_stale_settlement(app, admin_client):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "100.00"}])
    assert _pay(admin_client, acct["id"], "40.00", [{"invoice_id": inv["id"], "amount": "40.00"}]).status_code == 201

    with session_scope(app) as s:
        stale = s.get(Invoice, inv["id"])
        stale.amount_paid = Decimal("0")
        stale.amount_due = Decimal("100.00")
        stale.payment_status = "UNPAID"

    listed = admin_client.get("/api/invoices").json["invoices"][0]
    assert listed["payment_status"] == "PARTIALLY_PAID"
    assert listed["amount_due"] == 60.0

    with session_scope(app) as s:
        saved = s.get(Invoice, inv["id"])
        assert saved.payment_status == "PARTIALLY_PAID"
        assert saved.amount_paid == Decimal("40.00")
        assert saved.amount_due == Decimal("60.00")


def test_document_number_retries_after_collision(app, admin_client, monkeypatch):
    acct = create_account(admin_client)
    assert _pay(admin_client, acct["id"], "10.00", []).json["payment"]["number"] == "PAY-000001"

    # another writer already holds PAY-000001
    numbers = iter(["PAY-000001", "PAY-000002"])
    monkeypatch.setattr(utils, "next_document_number", lambda *args: next(numbers))
    with session_scope(app) as s:
        payment = Payment(organization_id=org_id(app), account_id=acct["id"], amount=Decimal("5.00"), method="CASH")
        utils.add_with_number(s, payment, "PAY")
        assert payment.number == "PAY-000002"

    with session_scope(app) as s:
        assert sorted(p.number for p in s.query(Payment)) == ["PAY-000001", "PAY-000002"]


def test_payment_allocations_link_invoices(app, admin_client, recwarn):
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"description": "Work", "quantity": 1, "unit_price": "30.00"}])
    r = _pay(admin_client, acct["id"], "30.00", [{"invoice_id": inv["id"], "amount": "30.00"}])
    assert r.status_code == 201
    assert not [w for w in recwarn if issubclass(w.category, SAWarning)]
    with session_scope(app) as s:
        (alloc,) = s.get(Invoice, inv["id"]).allocations
        assert alloc.payment.number == r.json["payment"]["number"]
