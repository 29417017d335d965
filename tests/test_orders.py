import pytest

from app.bizops.db import session_scope
from app.bizops.modules.notifications.models import NotificationLog
from app.bizops.modules.orders.service import can_transition, map_to_ecommerce_status

from conftest import create_account, create_product


def _order(client, account_id, lines=None):
    r = client.post(
        "/api/orders",
        json={"account_id": account_id, "lines": lines or [{"description": "Crate", "quantity": 2, "unit_price": "12.50"}], "delivery_address": "12 Ring Rd"},
    )
    assert r.status_code == 201, r.json
    return r.json["order"]


@pytest.mark.parametrize(
    "current,new,ok",
    [
        ("PENDING", "CONFIRMED", True),
        ("PENDING", "SHIPPED", True),
        ("SHIPPED", "PROCESSING", False),
        ("PROCESSING", "CANCELLED", True),
        ("SHIPPED", "CANCELLED", False),
        ("COMPLETED", "CANCELLED", False),
        ("CANCELLED", "PENDING", False),
    ],
)
def test_can_transition(current, new, ok):
    assert can_transition(current, new) is ok


def test_map_to_ecommerce_status():
    assert map_to_ecommerce_status("READY_TO_SHIP") == "SHIPPED"
    assert map_to_ecommerce_status("COMPLETED") == "DELIVERED"
    assert map_to_ecommerce_status("PENDING") == "PENDING"


def test_manual_order(app, admin_client):
    acct = create_account(admin_client)
    so = _order(admin_client, acct["id"])
    assert so["number"] == "SO-000001"
    assert so["source"] == "MANUAL"
    assert so["total"] == 25.0
    assert so["lines"][0]["line_total"] == 25.0

    with session_scope(app) as s:
        kinds = {n.channel for n in s.query(NotificationLog).filter(NotificationLog.kind == "order_created")}
        assert kinds == {"email", "sms"}


def test_manual_order_requires_account(admin_client):
    r = admin_client.post("/api/orders", json={"lines": [{"description": "x", "quantity": 1, "unit_price": 1}]})
    assert r.status_code == 400


def test_status_flow_and_timestamps(admin_client):
    acct = create_account(admin_client)
    so = _order(admin_client, acct["id"])

    r = admin_client.post(f"/api/orders/{so['id']}/status", json={"status": "SHIPPED"})
    assert r.status_code == 200
    assert r.json["changed"] is True
    assert r.json["order"]["shipped_at"] is not None

    r = admin_client.post(f"/api/orders/{so['id']}/status", json={"status": "SHIPPED"})
    assert r.json["changed"] is False

    assert admin_client.post(f"/api/orders/{so['id']}/status", json={"status": "CANCELLED"}).status_code == 409
    assert admin_client.post(f"/api/orders/{so['id']}/status", json={"status": "LOST"}).status_code == 400

    r = admin_client.post(f"/api/orders/{so['id']}/status", json={"status": "COMPLETED"})
    assert r.json["order"]["delivered_at"] is not None
    assert admin_client.patch(f"/api/orders/{so['id']}", json={"notes": "late"}).status_code == 409


def test_only_pending_orders_deleted(admin_client):
    acct = create_account(admin_client)
    first = _order(admin_client, acct["id"])
    second = _order(admin_client, acct["id"])
    admin_client.post(f"/api/orders/{second['id']}/status", json={"status": "CONFIRMED"})

    assert admin_client.delete(f"/api/orders/{first['id']}").status_code == 200
    assert admin_client.delete(f"/api/orders/{second['id']}").status_code == 409


def test_list_filters(admin_client):
    acct = create_account(admin_client)
    product = create_product(admin_client)
    _order(admin_client, acct["id"])
    confirmed = _order(admin_client, acct["id"], lines=[{"product_id": product["id"], "quantity": 1}])
    admin_client.post(f"/api/orders/{confirmed['id']}/status", json={"status": "CONFIRMED"})

    r = admin_client.get("/api/orders?status=CONFIRMED")
    assert [o["id"] for o in r.json["orders"]] == [confirmed["id"]]
    r = admin_client.get("/api/orders?source=INVOICE")
    assert r.json["orders"] == []
