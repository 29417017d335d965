import hashlib
import hmac
import json
from datetime import datetime

import pytest

from app.bizops.db import session_scope
from app.bizops.errors import ValidationError
from app.bizops.modules.crm.models import Lead
from app.bizops.modules.ecommerce.models import EcommerceOrder
from app.bizops.modules.ecommerce.service import effective_status, update_status, verify_signature
from app.bizops.modules.invoicing.models import Invoice, Payment
from app.bizops.modules.orders.models import SalesOrder

from conftest import create_product, login

SHOP = "/api/public/acme/shop"


def _checkout(client, product_id, quantity=2, email="abena@example.com"):
    r = client.post(
        f"{SHOP}/checkout",
        json={
            "customer": {"name": "Abena Owusu", "email": email, "phone": "0244000000"},
            "items": [{"product_id": product_id, "quantity": quantity}],
            "shipping_address": {"line1": "4 Oxford St", "city": "Accra"},
        },
    )
    assert r.status_code == 201, r.json
    return r.json


def _charge(invoice_id, reference="PSK-001", amount_minor=10000):
    return {
        "event": "charge.success",
        "data": {"reference": reference, "amount": amount_minor, "metadata": {"invoiceId": invoice_id}},
    }


def _post_webhook(client, event, secret=None):
    body = json.dumps(event).encode("utf-8")
    headers = {}
    if secret:
        headers["x-paystack-signature"] = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return client.post(f"{SHOP}/payment/webhook", data=body, content_type="application/json", headers=headers)


def _product(app):
    client = app.test_client()
    login(client)
    product = create_product(client, sku="MUG", unit_price="50.00", stock="10")
    client.post("/api/catalog/products", json={"sku": "OLD", "name": "Retired", "unit_price": "5", "is_active": False})
    return product


def test_storefront_lists_active_products(app, client):
    _product(app)
    r = client.get(f"{SHOP}/products")
    assert r.status_code == 200
    assert [p["sku"] for p in r.json["products"]] == ["MUG"]
    assert client.get("/api/public/nowhere/shop/products").status_code == 404


def test_checkout_creates_lead_invoice_and_order(app, client):
    product = _product(app)
    out = _checkout(client, product["id"])
    assert out["total"] == 100.0
    assert out["currency"] == "GHS"

    with session_scope(app) as s:
        inv = s.get(Invoice, out["invoice_id"])
        assert inv.status == "SENT"
        assert inv.payment_status == "UNPAID"
        assert inv.account_id is None
        lead = s.get(Lead, inv.lead_id)
        assert lead.source == "ECOMMERCE"
        assert lead.email == "abena@example.com"
        order = s.query(EcommerceOrder).filter(EcommerceOrder.invoice_id == inv.id).one()
        assert order.order_number == inv.number == out["order_number"]
        assert order.status == "PENDING"
        assert order.payment_status == "PENDING"
        assert len(order.items) == 1

    # returning customer reuses the lead
    _checkout(client, product["id"], quantity=1)
    with session_scope(app) as s:
        assert s.query(Lead).count() == 1


def test_checkout_validation(app, client):
    product = _product(app)
    r = client.post(f"{SHOP}/checkout", json={"customer": {"name": "X", "email": "bad"}, "items": [{"product_id": product["id"], "quantity": 1}]})
    assert r.status_code == 400
    r = client.post(f"{SHOP}/checkout", json={"name": "X", "email": "x@example.com", "items": [{"product_id": product["id"], "quantity": 0}]})
    assert r.status_code == 400
    r = client.post(f"{SHOP}/checkout", json={"name": "X", "email": "x@example.com", "items": [{"product_id": 9999, "quantity": 1}]})
    assert r.status_code == 400


def test_webhook_settles_invoice_and_creates_sales_order(app, client):
    product = _product(app)
    out = _checkout(client, product["id"])

    r = _post_webhook(client, _charge(out["invoice_id"]))
    assert r.status_code == 200
    assert r.json["status"] == "processed"

    with session_scope(app) as s:
        inv = s.get(Invoice, out["invoice_id"])
        assert inv.payment_status == "PAID"
        assert inv.account_id is not None
        payment = s.query(Payment).one()
        assert payment.method == "CREDIT_CARD"
        assert payment.reference == "PSK-001"
        so = s.query(SalesOrder).filter(SalesOrder.invoice_id == inv.id).one()
        assert so.source == "ECOMMERCE"
        order = s.query(EcommerceOrder).one()
        assert order.payment_status == "PAID"
        assert order.status == "CONFIRMED"
        assert order.payment_reference == "PSK-001"

    admin = app.test_client()
    login(admin)
    assert admin.get(f"/api/catalog/products/{product['id']}").json["product"]["stock_quantity"] == 8.0


def test_webhook_is_idempotent(app, client):
    product = _product(app)
    out = _checkout(client, product["id"])
    assert _post_webhook(client, _charge(out["invoice_id"])).json["status"] == "processed"
    again = _post_webhook(client, _charge(out["invoice_id"]))
    assert again.status_code == 200
    assert again.json["status"] == "duplicate"
    with session_scope(app) as s:
        assert s.query(Payment).count() == 1
        assert s.query(SalesOrder).count() == 1


def test_webhook_signature(app, client):
    product = _product(app)
    out = _checkout(client, product["id"])
    app.config["PAYSTACK_SECRET_KEY"] = "sk_test_123"

    unsigned = _post_webhook(client, _charge(out["invoice_id"]))
    assert unsigned.status_code == 401
    bad = _post_webhook(client, _charge(out["invoice_id"]), secret="wrong")
    assert bad.status_code == 401
    with session_scope(app) as s:
        assert s.get(Invoice, out["invoice_id"]).payment_status == "UNPAID"
        assert s.query(Payment).count() == 0

    good = _post_webhook(client, _charge(out["invoice_id"]), secret="sk_test_123")
    assert good.json["status"] == "processed"


def test_organization_paystack_key_overrides_environment(app, client):
    product = _product(app)
    out = _checkout(client, product["id"])
    app.config["PAYSTACK_SECRET_KEY"] = "sk_env"
    admin = app.test_client()
    login(admin)
    assert admin.put("/api/settings", json={"paystack_secret_key": "sk_org"}).status_code == 200

    assert _post_webhook(client, _charge(out["invoice_id"]), secret="sk_env").status_code == 401
    assert _post_webhook(client, _charge(out["invoice_id"]), secret="sk_org").json["status"] == "processed"


def test_webhook_rejects_malformed_amount(app, client):
    product = _product(app)
    out = _checkout(client, product["id"])
    r = _post_webhook(client, _charge(out["invoice_id"], amount_minor="abc"))
    assert r.status_code == 400
    assert _post_webhook(client, _charge(out["invoice_id"], amount_minor=0)).status_code == 400
    with session_scope(app) as s:
        assert s.query(Payment).count() == 0


def test_webhook_ignores_other_events(app, client):
    product = _product(app)
    _checkout(client, product["id"])
    r = _post_webhook(client, {"event": "transfer.success", "data": {}})
    assert r.json["status"] == "ignored"
    r = _post_webhook(client, _charge(424242))
    assert r.json["status"] == "ignored"


def test_verify_signature():
    body = b'{"a":1}'
    sig = hmac.new(b"secret", body, hashlib.sha512).hexdigest()
    assert verify_signature("secret", body, sig)
    assert verify_signature("secret", body, sig.upper())
    assert not verify_signature("secret", body + b" ", sig)


def test_effective_status_prefers_delivered_sales_order():
    order = EcommerceOrder(status="SHIPPED")
    assert effective_status(order, None) == "SHIPPED"
    assert effective_status(order, SalesOrder(status="COMPLETED")) == "DELIVERED"
    assert effective_status(order, SalesOrder(status="PROCESSING", delivered_at=datetime(2030, 1, 1))) == "DELIVERED"
    assert effective_status(order, SalesOrder(status="PROCESSING")) == "SHIPPED"


def test_sales_order_status_syncs_to_ecommerce_order(app, client):
    product = _product(app)
    out = _checkout(client, product["id"])
    _post_webhook(client, _charge(out["invoice_id"]))

    admin = app.test_client()
    login(admin)
    so = admin.get("/api/orders").json["orders"][0]
    admin.post(f"/api/orders/{so['id']}/status", json={"status": "READY_TO_SHIP"})

    orders = admin.get("/api/ecommerce/orders").json["orders"]
    assert orders[0]["status"] == "SHIPPED"
    assert orders[0]["shipped_at"] is not None

    admin.post(f"/api/orders/{so['id']}/status", json={"status": "DELIVERED"})
    detail = admin.get(f"/api/ecommerce/orders/{orders[0]['id']}").json["order"]
    assert detail["status"] == "DELIVERED"
    assert detail["sales_order"]["status"] == "DELIVERED"
    assert detail["shipping_address"]["city"] == "Accra"


def test_admin_can_update_ecommerce_status(app, client):
    product = _product(app)
    _checkout(client, product["id"])
    admin = app.test_client()
    login(admin)
    order_id = admin.get("/api/ecommerce/orders").json["orders"][0]["id"]
    r = admin.post(f"/api/ecommerce/orders/{order_id}/status", json={"status": "CANCELLED", "payment_status": "REFUNDED"})
    assert r.status_code == 200
    assert r.json["order"]["status"] == "CANCELLED"
    assert r.json["order"]["payment_status"] == "REFUNDED"
    assert admin.post(f"/api/ecommerce/orders/{order_id}/status", json={"status": "LOST"}).status_code == 400


def test_status_update_validates_before_changing_order():
    order = EcommerceOrder(status="PENDING", payment_status="PENDING")
    with pytest.raises(ValidationError):
        update_status(None, order, "SHIPPED", None, payment_status="LOST")
    assert order.status == "PENDING"
    assert order.shipped_at is None
