"""
Per-organization settings.

Values are stored as text. Known keys and their defaults live in ``SETTINGS``; anything
else is rejected on write.
"""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.bizops.audit import record_event
from app.bizops.errors import ValidationError

from .models import SystemSetting

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.bizops.models import User


SETTINGS: dict[str, str] = {
    "company_name": "",
    "currency": "",
    "quotation_reminders_enabled": "false",
    "quotation_reminder_days": "7",
    "quotation_reminder_interval_days": "7",
    "invoice_reminders_enabled": "false",
    "invoice_reminder_days_after_due": "7",
    "invoice_reminder_interval_days": "7",
    "daily_task_reminders_enabled": "false",
    "smtp_host": "",
    "smtp_port": "587",
    "smtp_username": "",
    "smtp_password": "",
    "smtp_from_address": "",
    "smtp_from_name": "",
    "smtp_encryption": "tls",
    "sms_username": "",
    "sms_password": "",
    "sms_sender_id": "",
    "sms_api_url": "",
    "paystack_secret_key": "",
}

SECRET_KEYS = frozenset({"smtp_password", "sms_password", "paystack_secret_key"})
BOOL_KEYS = frozenset(k for k in SETTINGS if k.endswith("_enabled"))
INT_KEYS = frozenset(
    {
        "quotation_reminder_days",
        "quotation_reminder_interval_days",
        "invoice_reminder_days_after_due",
        "invoice_reminder_interval_days",
        "smtp_port",
    }
)
SMTP_ENCRYPTIONS = ("tls", "ssl", "none")
MASK = "********"


def _row(s: "Session", organization_id: int, key: str) -> SystemSetting | None:
    return (
        s.query(SystemSetting)
        .filter(SystemSetting.organization_id == organization_id, SystemSetting.key == key)
        .one_or_none()
    )


def get_setting(s: "Session", organization_id: int, key: str, default: str | None = None) -> str:
    row = _row(s, organization_id, key)
    if row is not None and row.value is not None:
        return row.value
    if default is not None:
        return default
    return SETTINGS.get(key, "")


def get_int_setting(s: "Session", organization_id: int, key: str, default: int | None = None) -> int:
    fallback = default if default is not None else int(SETTINGS.get(key) or 0)
    raw = get_setting(s, organization_id, key, "").strip()
    try:
        return int(raw) if raw else fallback
    except ValueError:
        return fallback


def get_bool_setting(s: "Session", organization_id: int, key: str) -> bool:
    # Only the literal "true" enables a flag.
    return get_setting(s, organization_id, key).strip() == "true"


def all_settings(s: "Session", organization_id: int, *, mask_secrets: bool = True) -> dict[str, str]:
    stored = {
        r.key: r.value
        for r in s.query(SystemSetting).filter(SystemSetting.organization_id == organization_id).all()
    }
    out: dict[str, str] = {}
    for key, default in SETTINGS.items():
        value = stored.get(key)
        value = default if value is None else value
        if mask_secrets and key in SECRET_KEYS and value:
            value = MASK
        out[key] = value
    return out


def _normalize(key: str, value: Any) -> str:
    if value is None:
        return ""
    if key in BOOL_KEYS:
        if isinstance(value, bool):
            return "true" if value else "false"
        raw = str(value).strip().lower()
        if raw not in ("true", "false"):
            raise ValidationError(f"{key} must be true or false")
        return raw
    raw = str(value).strip()
    if key in INT_KEYS and raw:
        try:
            n = int(raw)
        except ValueError as e:
            raise ValidationError(f"{key} must be a whole number") from e
        if n < 0:
            raise ValidationError(f"{key} must not be negative")
        return str(n)
    if key == "smtp_encryption" and raw and raw.lower() not in SMTP_ENCRYPTIONS:
        raise ValidationError(f"smtp_encryption must be one of: {', '.join(SMTP_ENCRYPTIONS)}")
    if key == "currency":
        return raw.upper()
    return raw


def set_settings(s: "Session", organization_id: int, values: dict[str, Any], user: "User | None") -> dict[str, str]:
    """Upsert known settings. Returns the (redacted) changes that were applied."""
    unknown = sorted(k for k in values if k not in SETTINGS)
    if unknown:
        raise ValidationError("Unknown setting keys", details={"keys": unknown})

    changes: dict[str, str] = {}
    now = datetime.utcnow()
    for key, value in values.items():
        # Masked secrets coming back from the settings screen mean "unchanged".
        if key in SECRET_KEYS and value == MASK:
            continue
        normalized = _normalize(key, value)
        row = _row(s, organization_id, key)
        if row is None:
            row = SystemSetting(organization_id=organization_id, key=key, value=normalized, updated_at=now)
            s.add(row)
        elif row.value == normalized:
            continue
        else:
            row.value = normalized
            row.updated_at = now
        changes[key] = MASK if key in SECRET_KEYS else normalized

    if changes:
        s.flush()
        record_event(
            s,
            actor=user,
            action="settings.update",
            entity_type="SystemSetting",
            entity_id=str(organization_id),
            metadata={"changes": changes},
            organization_id=organization_id,
        )
    return changes


def get_company_name(s: "Session", organization_id: int) -> str:
    from app.bizops.models import Organization

    name = get_setting(s, organization_id, "company_name").strip()
    if name:
        return name
    org = s.get(Organization, organization_id)
    return org.name if org else ""


def get_currency(s: "Session", organization_id: int) -> str:
    """Document currency: the ``currency`` setting, else the organization's currency."""
    from app.bizops.models import Organization

    code = get_setting(s, organization_id, "currency").strip().upper()
    if code:
        return code
    org = s.get(Organization, organization_id)
    return (org.currency if org else "") or "GHS"
