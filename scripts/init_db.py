import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.bizops.models import Organization, Role, User
from app.bizops.permissions import ensure_default_roles, ensure_permissions
from scripts._db_utils import script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions, the default organization, its roles and the admin user (idempotent).
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    org_name = (os.environ.get("DEFAULT_ORG_NAME") or "Default Organization").strip()
    org_slug = (os.environ.get("DEFAULT_ORG_SLUG") or "default").strip().lower()
    currency = (os.environ.get("DEFAULT_CURRENCY") or "GHS").strip().upper()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///bizops.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        ensure_permissions(s)

        org = s.query(Organization).filter(Organization.slug == org_slug).one_or_none()
        if not org:
            org = Organization(name=org_name, slug=org_slug, currency=currency, is_active=True)
            s.add(org)
            s.flush()
            print(f"Created organization {org_slug}", flush=True)

        roles = ensure_default_roles(s, org)
        admin_role: Role = roles["admin"]

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                organization_id=org.id,
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                name="Administrator",
                is_active=True,
            )
            s.add(user)
            print(f"Created admin user {admin_email}", flush=True)
        if admin_role not in user.roles:
            user.roles.append(admin_role)


def main() -> None:
    seed_only()
    print("Seed complete.", flush=True)


if __name__ == "__main__":
    main()
