import pytest
from werkzeug.security import generate_password_hash

from app.bizops import create_app
from app.bizops.auth import reset_rate_limits
from app.bizops.db import session_scope
from app.bizops.models import Base, Organization, User
from app.bizops.permissions import ensure_default_roles


def _seed_org(s, slug: str, name: str, admin_email: str, viewer_email: str | None = None) -> Organization:
    org = Organization(name=name, slug=slug, currency="GHS", is_active=True)
    s.add(org)
    s.flush()
    roles = ensure_default_roles(s, org)
    admin = User(
        organization_id=org.id,
        email=admin_email,
        name="Ama Admin",
        phone="0241234567",
        password_hash=generate_password_hash("pw"),
        is_active=True,
    )
    admin.roles.append(roles["admin"])
    s.add(admin)
    if viewer_email:
        viewer = User(
            organization_id=org.id,
            email=viewer_email,
            password_hash=generate_password_hash("pw"),
            is_active=True,
        )
        viewer.roles.append(roles["viewer"])
        s.add(viewer)
    return org


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("NOTIFICATIONS_DRY_RUN", "1")
    monkeypatch.setenv("CSRF_ENABLED", "0")
    for k in (
        "S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY",
        "CRON_SECRET", "PAYSTACK_SECRET_KEY", "DEFAULT_CURRENCY",
    ):
        monkeypatch.delenv(k, raising=False)
    reset_rate_limits()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        _seed_org(s, "acme", "Acme Supplies", "admin@example.com", "viewer@example.com")
        _seed_org(s, "globex", "Globex Ltd", "other@example.com")

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, email: str = "admin@example.com", password: str = "pw"):
    return client.post("/auth/login", json={"email": email, "password": password})


@pytest.fixture()
def admin_client(client):
    r = login(client)
    assert r.status_code == 200
    return client


def org_id(app, slug: str = "acme") -> int:
    with session_scope(app) as s:
        return s.query(Organization).filter(Organization.slug == slug).one().id


def create_account(client, name: str = "Kofi Mensah", **extra) -> dict:
    payload = {"name": name, "email": "kofi@example.com", "phone": "0207654321", "type": "INDIVIDUAL"}
    payload.update(extra)
    r = client.post("/api/crm/accounts", json=payload)
    assert r.status_code == 201, r.json
    return r.json["account"]


def create_product(client, sku: str = "WID-1", unit_price: str = "50.00", stock: str = "10", **extra) -> dict:
    payload = {"sku": sku, "name": f"Widget {sku}", "unit_price": unit_price, "cost": "20.00", "stock_quantity": stock}
    payload.update(extra)
    r = client.post("/api/catalog/products", json=payload)
    assert r.status_code == 201, r.json
    return r.json["product"]


def create_invoice(client, account_id: int, lines: list[dict], **extra) -> dict:
    payload = {"subject": "Supplies", "account_id": account_id, "due_date": "2030-01-31", "lines": lines}
    payload.update(extra)
    r = client.post("/api/invoices", json=payload)
    assert r.status_code == 201, r.json
    return r.json["invoice"]
