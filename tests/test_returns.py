from app.bizops.db import session_scope
from app.bizops.modules.catalog.models import StockMovement
from app.bizops.modules.returns.service import can_transition

from conftest import create_account, create_invoice, create_product


def _paid_sale(client):
    acct = create_account(client)
    product = create_product(client, sku="KETTLE", unit_price="40.00", stock="10")
    inv = create_invoice(client, acct["id"], [{"product_id": product["id"], "quantity": 3}])
    r = client.post(
        "/api/payments",
        json={"account_id": acct["id"], "amount": "120.00", "method": "MOBILE_MONEY", "allocations": [{"invoice_id": inv["id"], "amount": "120.00"}]},
    )
    assert r.status_code == 201
    so = client.get("/api/orders").json["orders"][0]
    return acct, product, inv, so


def _stock(client, product_id):
    return client.get(f"/api/catalog/products/{product_id}").json["product"]["stock_quantity"]


def test_can_transition():
    assert can_transition("PENDING", "APPROVED")
    assert can_transition("APPROVED", "COMPLETED")
    assert not can_transition("REJECTED", "APPROVED")
    assert not can_transition("APPROVED", "PENDING")


def test_approving_return_restocks_and_issues_credit_note(app, admin_client):
    acct, product, inv, so = _paid_sale(admin_client)
    assert _stock(admin_client, product["id"]) == 7.0

    r = admin_client.post(
        "/api/returns",
        json={"sales_order_id": so["id"], "reason": "DEFECTIVE", "lines": [{"product_id": product["id"], "quantity": 1, "reason": "Cracked"}]},
    )
    assert r.status_code == 201
    ret = r.json["return"]
    assert ret["number"] == "RET-000001"
    assert ret["status"] == "PENDING"
    assert ret["total"] == 40.0
    assert ret["account_id"] == acct["id"]
    assert ret["credit_note"] is None
    assert _stock(admin_client, product["id"]) == 7.0

    r = admin_client.post(f"/api/returns/{ret['id']}/status", json={"status": "APPROVED"})
    assert r.status_code == 200
    approved = r.json["return"]
    assert approved["status"] == "APPROVED"
    assert approved["approved_at"] is not None
    assert approved["credit_note"]["amount"] == 40.0
    assert approved["credit_note"]["status"] == "PENDING"
    assert _stock(admin_client, product["id"]) == 8.0

    cn = admin_client.get(f"/api/credit-notes/{approved['credit_note']['id']}").json["credit_note"]
    assert cn["reason"] == "RETURN"
    assert cn["invoice_id"] == inv["id"]
    assert cn["return_id"] == ret["id"]

    with session_scope(app) as s:
        movement = s.query(StockMovement).filter(StockMovement.type == "RETURN").one()
        assert movement.reference == ret["number"]
        assert float(movement.unit_cost) == 20.0


def test_create_approved_return_without_order(admin_client):
    acct = create_account(admin_client)
    product = create_product(admin_client, sku="FAN", unit_price="99.00", stock="0")
    r = admin_client.post(
        "/api/returns",
        json={"account_id": acct["id"], "reason": "CUSTOMER_REQUEST", "status": "APPROVED", "lines": [{"product_id": product["id"], "quantity": 2}]},
    )
    assert r.status_code == 201
    assert r.json["return"]["status"] == "APPROVED"
    assert r.json["return"]["total"] == 198.0
    assert r.json["return"]["credit_note"] is None
    assert _stock(admin_client, product["id"]) == 2.0


def test_return_validation(admin_client):
    acct = create_account(admin_client)
    product = create_product(admin_client)
    lines = [{"product_id": product["id"], "quantity": 1}]
    assert admin_client.post("/api/returns", json={"reason": "DAMAGED", "lines": lines}).status_code == 400
    assert admin_client.post("/api/returns", json={"account_id": acct["id"], "reason": "BORED", "lines": lines}).status_code == 400
    r = admin_client.post("/api/returns", json={"account_id": acct["id"], "reason": "DAMAGED", "status": "COMPLETED", "lines": lines})
    assert r.status_code == 400
    r = admin_client.post("/api/returns", json={"account_id": acct["id"], "reason": "DAMAGED", "lines": [{"product_id": product["id"], "quantity": 0}]})
    assert r.status_code == 400


def test_rejected_return_is_final(admin_client):
    acct = create_account(admin_client)
    product = create_product(admin_client)
    r = admin_client.post("/api/returns", json={"account_id": acct["id"], "reason": "OTHER", "lines": [{"product_id": product["id"], "quantity": 1}]})
    ret_id = r.json["return"]["id"]
    assert admin_client.post(f"/api/returns/{ret_id}/status", json={"status": "REJECTED"}).status_code == 200
    assert admin_client.post(f"/api/returns/{ret_id}/status", json={"status": "APPROVED"}).status_code == 409
    assert _stock(admin_client, product["id"]) == 10.0
