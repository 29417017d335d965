from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.bizops.models import Base, TenantMixin
from app.bizops.modules.catalog.models import Product
from app.bizops.modules.crm.models import Account
from app.bizops.modules.orders.models import SalesOrder


class Return(TenantMixin, Base):
    __tablename__ = "returns"
    __table_args__ = (
        UniqueConstraint("organization_id", "number", name="uq_returns_org_number"),
        Index("idx_returns_org_status", "organization_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    number: Mapped[str] = mapped_column(String(32), nullable=False)  # RET-000001
    sales_order_id: Mapped[int | None] = mapped_column(ForeignKey("sales_orders.id", ondelete="SET NULL"), nullable=True, index=True)
    account_id: Mapped[int | None] = mapped_column(ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, index=True)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)  # DAMAGED, DEFECTIVE, WRONG_ITEM, CUSTOMER_REQUEST, QUALITY_ISSUE, OTHER
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    sales_order: Mapped[SalesOrder | None] = relationship(lazy="selectin")
    account: Mapped[Account | None] = relationship(lazy="selectin")
    lines: Mapped[list["ReturnLine"]] = relationship(
        back_populates="return_",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ReturnLine.id",
    )


class ReturnLine(Base):
    __tablename__ = "return_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    return_id: Mapped[int] = mapped_column(ForeignKey("returns.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    return_: Mapped[Return] = relationship(back_populates="lines")
    product: Mapped[Product] = relationship(lazy="selectin")
