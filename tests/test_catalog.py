from app.bizops.db import session_scope
from app.bizops.modules.catalog.models import StockMovement

from conftest import create_account, create_invoice, create_product, login


def test_create_product_with_opening_stock(app, admin_client):
    product = create_product(admin_client, sku="wid-1", stock="10")
    assert product["sku"] == "WID-1"
    assert product["stock_quantity"] == 10.0
    assert product["average_cost"] == 20.0

    detail = admin_client.get(f"/api/catalog/products/{product['id']}").json
    assert [(m["type"], m["reason"]) for m in detail["recent_movements"]] == [("RECEIPT", "Opening stock")]

    r = admin_client.post("/api/catalog/products", json={"sku": "Wid-1", "name": "Copy"})
    assert r.status_code == 409
    assert r.json["error"] == "SKU WID-1 already exists."
    assert admin_client.post("/api/catalog/products", json={"sku": "X"}).status_code == 400
    assert admin_client.post("/api/catalog/products", json={"sku": "X", "name": "X", "unit_price": "-1"}).status_code == 400


def test_update_product(admin_client):
    a = create_product(admin_client, sku="A-1")
    create_product(admin_client, sku="B-1")
    r = admin_client.patch(f"/api/catalog/products/{a['id']}", json={"name": "Desk lamp", "unit_price": "75.50"})
    assert r.status_code == 200
    assert r.json["product"]["name"] == "Desk lamp"
    assert r.json["product"]["unit_price"] == 75.5
    assert admin_client.patch(f"/api/catalog/products/{a['id']}", json={"sku": "b-1"}).status_code == 409

    events = admin_client.get("/api/admin/audit?action=product.edit").json["events"]
    assert events[0]["metadata"]["changes"]["name"] == {"old": "Widget A-1", "new": "Desk lamp"}


def test_product_filters(admin_client):
    create_product(admin_client, sku="LAMP", name="Desk lamp", stock="4")
    create_product(admin_client, sku="CHAIR", name="Office chair", stock="0")
    create_product(admin_client, sku="OLD", name="Retired stool", stock="2", is_active=False)

    def names(qs):
        return [p["name"] for p in admin_client.get(f"/api/catalog/products{qs}").json["products"]]

    assert names("?q=lamp") == ["Desk lamp"]
    assert names("?q=chair") == ["Office chair"]
    assert names("?low_stock=1") == ["Office chair"]
    assert names("?active=0") == ["Retired stool"]
    assert names("") == ["Desk lamp", "Office chair", "Retired stool"]


def test_stock_movements(admin_client):
    product = create_product(admin_client, sku="BOLT", stock="10")
    url = f"/api/catalog/products/{product['id']}/stock"

    r = admin_client.post(url, json={"type": "receipt", "quantity": "10", "unit_cost": "30.00", "reference": "GRN-7"})
    assert r.status_code == 201, r.json
    assert r.json["movement"]["type"] == "RECEIPT"
    assert r.json["product"]["stock_quantity"] == 20.0
    assert r.json["product"]["average_cost"] == 25.0

    r = admin_client.post(url, json={"type": "DAMAGE", "quantity": "3", "reason": "Water damage"})
    assert r.json["movement"]["quantity"] == -3.0
    assert r.json["product"]["stock_quantity"] == 17.0
    assert r.json["product"]["average_cost"] == 25.0

    r = admin_client.post(url, json={"type": "ADJUSTMENT", "quantity": "-2"})
    assert r.json["product"]["stock_quantity"] == 15.0

    assert admin_client.post(url, json={"type": "THEFT", "quantity": "1"}).status_code == 400
    assert admin_client.post(url, json={"type": "RECEIPT", "quantity": "0"}).status_code == 400
    assert admin_client.post(url, json={"type": "RECEIPT", "quantity": "-1"}).status_code == 400
    assert admin_client.post(url, json={"type": "RECEIPT"}).status_code == 400

    movements = admin_client.get(f"/api/catalog/stock-movements?product_id={product['id']}").json["movements"]
    assert [m["type"] for m in movements] == ["ADJUSTMENT", "DAMAGE", "RECEIPT", "RECEIPT"]
    damage = admin_client.get("/api/catalog/stock-movements?type=damage").json["movements"]
    assert [m["reason"] for m in damage] == ["Water damage"]


def test_delete_product_rules(app, admin_client):
    spare = create_product(admin_client, sku="SPARE", stock="5")
    assert admin_client.delete(f"/api/catalog/products/{spare['id']}").status_code == 200
    assert admin_client.get(f"/api/catalog/products/{spare['id']}").status_code == 404
    with session_scope(app) as s:
        assert s.query(StockMovement).filter(StockMovement.product_id == spare["id"]).count() == 0

    sold = create_product(admin_client, sku="SOLD", unit_price="10.00", stock="5")
    acct = create_account(admin_client)
    inv = create_invoice(admin_client, acct["id"], [{"product_id": sold["id"], "quantity": 1}])
    r = admin_client.post(
        "/api/payments",
        json={"account_id": acct["id"], "amount": "10.00", "method": "CASH", "allocations": [{"invoice_id": inv["id"], "amount": "10.00"}]},
    )
    assert r.status_code == 201, r.json
    r = admin_client.delete(f"/api/catalog/products/{sold['id']}")
    assert r.status_code == 409
    assert admin_client.patch(f"/api/catalog/products/{sold['id']}", json={"is_active": False}).json["product"]["is_active"] is False


def test_products_are_tenant_scoped(app, admin_client):
    product = create_product(admin_client, sku="MINE")
    other = app.test_client()
    login(other, email="other@example.com")
    assert other.get(f"/api/catalog/products/{product['id']}").status_code == 404
    assert other.get("/api/catalog/products").json["products"] == []
    # SKUs are unique per organization only
    assert other.post("/api/catalog/products", json={"sku": "MINE", "name": "Theirs"}).status_code == 201


def test_viewer_cannot_edit_products(app, admin_client):
    product = create_product(admin_client, sku="VIEW")
    viewer = app.test_client()
    login(viewer, email="viewer@example.com")
    assert viewer.get(f"/api/catalog/products/{product['id']}").status_code == 200
    r = viewer.patch(f"/api/catalog/products/{product['id']}", json={"name": "Nope"})
    assert r.status_code == 403
    assert r.json["details"]["missing_permission"] == "products.edit"
    assert viewer.post(f"/api/catalog/products/{product['id']}/stock", json={"type": "RECEIPT", "quantity": "1"}).status_code == 403
