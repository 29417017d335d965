"""
Permission catalogue and default roles.

Permissions are global rows; roles are per organization. ``scripts/init_db.py`` and the
test fixtures seed from here so the two never drift.
"""
from __future__ import annotations

from sqlalchemy.orm import Session

from app.bizops.models import Organization, Permission, Role

PERMISSIONS: list[tuple[str, str]] = [
    ("admin.view", "Admin: view users, roles and audit trail"),
    ("admin.edit", "Admin: manage users"),
    ("settings.view", "Settings: view"),
    ("settings.edit", "Settings: edit"),
    ("crm.view", "CRM: view"),
    ("crm.edit", "CRM: create and edit"),
    ("products.view", "Products: view"),
    ("products.edit", "Products: create and edit"),
    ("inventory.adjust", "Inventory: record stock movements"),
    ("quotations.view", "Quotations: view"),
    ("quotations.edit", "Quotations: create, edit and send"),
    ("invoices.view", "Invoices: view"),
    ("invoices.edit", "Invoices: create, edit and send"),
    ("payments.view", "Payments: view"),
    ("payments.record", "Payments: record"),
    ("credit_notes.view", "Credit notes: view"),
    ("credit_notes.edit", "Credit notes: issue, apply and void"),
    ("orders.view", "Sales orders: view"),
    ("orders.edit", "Sales orders: create and update"),
    ("ecommerce.view", "E-commerce orders: view"),
    ("ecommerce.edit", "E-commerce orders: update status"),
    ("returns.view", "Returns: view"),
    ("returns.edit", "Returns: create and change status"),
    ("projects.view", "Projects and tasks: view"),
    ("projects.edit", "Projects and tasks: create and edit"),
    ("notifications.view", "Notification log: view"),
]

_VIEW_ALL = [k for k, _ in PERMISSIONS if k.endswith(".view")]

DEFAULT_ROLES: dict[str, tuple[str, list[str]]] = {
    "admin": ("Administrator", [k for k, _ in PERMISSIONS]),
    "sales": (
        "Sales",
        [
            "crm.view", "crm.edit", "products.view", "quotations.view", "quotations.edit",
            "invoices.view", "orders.view", "orders.edit", "ecommerce.view", "projects.view", "projects.edit",
        ],
    ),
    "finance": (
        "Finance",
        [
            "crm.view", "products.view", "quotations.view", "invoices.view", "invoices.edit",
            "payments.view", "payments.record", "credit_notes.view", "credit_notes.edit",
            "orders.view", "returns.view", "projects.view",
        ],
    ),
    "inventory": (
        "Inventory",
        [
            "products.view", "products.edit", "inventory.adjust", "orders.view", "orders.edit",
            "ecommerce.view", "ecommerce.edit", "returns.view", "returns.edit", "projects.view",
        ],
    ),
    "viewer": ("Viewer", [k for k in _VIEW_ALL if not k.startswith(("admin.", "settings."))]),
}


def ensure_permissions(s: Session) -> dict[str, Permission]:
    existing = {p.key: p for p in s.query(Permission).all()}
    for key, name in PERMISSIONS:
        if key not in existing:
            p = Permission(key=key, name=name)
            s.add(p)
            existing[key] = p
    s.flush()
    return existing


def ensure_default_roles(s: Session, org: Organization) -> dict[str, Role]:
    """Create missing default roles for ``org`` and top up their permissions (never removes any)."""
    perms = ensure_permissions(s)
    roles: dict[str, Role] = {}
    for key, (name, perm_keys) in DEFAULT_ROLES.items():
        role = s.query(Role).filter(Role.organization_id == org.id, Role.key == key).one_or_none()
        if not role:
            role = Role(organization_id=org.id, key=key, name=name)
            s.add(role)
        have = {p.key for p in role.permissions}
        for pk in perm_keys:
            if pk not in have:
                role.permissions.append(perms[pk])
        roles[key] = role
    s.flush()
    return roles
