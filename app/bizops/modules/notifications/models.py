from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.bizops.models import Base, TenantMixin


class NotificationLog(TenantMixin, Base):
    """One row per delivery attempt (email or SMS), including dry runs."""

    __tablename__ = "notification_logs"
    __table_args__ = (
        Index("idx_notification_logs_org_created", "organization_id", "created_at"),
        Index("idx_notification_logs_entity", "entity_type", "entity_id"),
        Index("idx_notification_logs_kind_recipient", "kind", "recipient"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)  # email | sms
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(512), nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # sent | failed | dry_run
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    kind: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. "invoice_reminder"
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
