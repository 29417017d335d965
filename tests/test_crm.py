from conftest import create_account, create_invoice, login


def test_account_crud(admin_client):
    acct = create_account(admin_client, "Esi Boateng")
    assert acct["type"] == "INDIVIDUAL"

    r = admin_client.patch(f"/api/crm/accounts/{acct['id']}", json={"phone": "0551112222"})
    assert r.status_code == 200
    assert r.json["account"]["phone"] == "0551112222"

    r = admin_client.get("/api/crm/accounts?q=boateng")
    assert [a["id"] for a in r.json["accounts"]] == [acct["id"]]

    assert admin_client.delete(f"/api/crm/accounts/{acct['id']}").status_code == 200
    assert admin_client.get(f"/api/crm/accounts/{acct['id']}").status_code == 404


def test_account_with_invoices_cannot_be_deleted(admin_client):
    acct = create_account(admin_client)
    create_invoice(admin_client, acct["id"], [{"description": "Service", "quantity": 1, "unit_price": "10"}])
    r = admin_client.delete(f"/api/crm/accounts/{acct['id']}")
    assert r.status_code == 409


def test_invalid_account_type(admin_client):
    r = admin_client.post("/api/crm/accounts", json={"name": "X", "type": "ALIEN"})
    assert r.status_code == 400


def test_lead_convert_creates_account_once(admin_client):
    r = admin_client.post("/api/crm/leads", json={"first_name": "Yaw", "last_name": "Asante", "email": "yaw@example.com"})
    assert r.status_code == 201
    lead_id = r.json["lead"]["id"]

    first = admin_client.post(f"/api/crm/leads/{lead_id}/convert")
    assert first.status_code == 200
    assert first.json["lead"]["status"] == "CONVERTED"
    second = admin_client.post(f"/api/crm/leads/{lead_id}/convert")
    assert second.json["account"]["id"] == first.json["account"]["id"]


def test_opportunity_requires_customer(admin_client):
    r = admin_client.post("/api/crm/opportunities", json={"name": "Big deal"})
    assert r.status_code == 400


def test_rows_of_other_organization_are_not_found(client):
    login(client, email="other@example.com")
    foreign = create_account(client, "Globex Customer")
    client.post("/auth/logout")

    login(client)
    assert client.get(f"/api/crm/accounts/{foreign['id']}").status_code == 404
    assert client.patch(f"/api/crm/accounts/{foreign['id']}", json={"name": "Hijack"}).status_code == 404
    listed = client.get("/api/crm/accounts").json["accounts"]
    assert foreign["id"] not in [a["id"] for a in listed]


def test_cannot_reference_foreign_account_on_invoice(client):
    login(client, email="other@example.com")
    foreign = create_account(client, "Globex Customer")
    client.post("/auth/logout")

    login(client)
    r = client.post(
        "/api/invoices",
        json={"subject": "X", "account_id": foreign["id"], "due_date": "2030-01-01", "lines": [{"description": "a", "quantity": 1, "unit_price": 1}]},
    )
    assert r.status_code == 404
