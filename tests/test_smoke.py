from conftest import create_account, login


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_plain(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_request_id_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "abc123"})
    assert r.headers["X-Request-ID"] == "abc123"


def test_api_requires_login(client):
    r = client.get("/api/crm/accounts")
    assert r.status_code == 401
    assert r.json["error"] == "Unauthorized"


def test_login_bad_password(client):
    r = login(client, password="nope")
    assert r.status_code == 401


def test_login_and_me(client):
    r = login(client)
    assert r.status_code == 200
    assert r.json["csrf_token"]
    me = client.get("/auth/me").json["user"]
    assert me["email"] == "admin@example.com"
    assert me["organization"]["slug"] == "acme"
    assert "invoices.edit" in me["permissions"]


def test_login_rate_limited(client):
    for _ in range(5):
        login(client, password="wrong")
    r = login(client, password="wrong")
    assert r.status_code == 429


def test_viewer_cannot_write(client):
    login(client, email="viewer@example.com")
    assert client.get("/api/crm/accounts").status_code == 200
    r = client.post("/api/crm/accounts", json={"name": "Nope"})
    assert r.status_code == 403
    assert r.json["details"]["missing_permission"] == "crm.edit"


def test_csrf_enforced_when_enabled(app, client):
    app.config["CSRF_ENABLED"] = True
    token = login(client).json["csrf_token"]

    r = client.post("/api/crm/accounts", json={"name": "No token"})
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]

    r = client.post("/api/crm/accounts", json={"name": "With token"}, headers={"X-CSRF-Token": token})
    assert r.status_code == 201


def test_validation_error_shape(admin_client):
    r = admin_client.post("/api/crm/accounts", json={"name": ""})
    assert r.status_code == 400
    assert r.json["error"] == "Name is required."


def test_audit_trail_records_actions(admin_client):
    create_account(admin_client, "Audited Ltd")
    events = admin_client.get("/api/admin/audit?action=account.create").json["events"]
    assert len(events) == 1
    assert events[0]["actor_user_email"] == "admin@example.com"
