from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.bizops.models import Base, TenantMixin
from app.bizops.modules.crm.models import Lead
from app.bizops.modules.invoicing.models import Invoice


class EcommerceOrder(TenantMixin, Base):
    """A storefront checkout. The order number is the number of the invoice created for it."""

    __tablename__ = "ecommerce_orders"
    __table_args__ = (
        UniqueConstraint("organization_id", "order_number", name="uq_ecommerce_orders_org_number"),
        Index("idx_ecommerce_orders_org_status", "organization_id", "status", "payment_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False)
    invoice_id: Mapped[int | None] = mapped_column(ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True, unique=True)
    lead_id: Mapped[int | None] = mapped_column(ForeignKey("leads.id", ondelete="SET NULL"), nullable=True, index=True)

    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(320), nullable=False)
    customer_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")  # PENDING, CONFIRMED, PROCESSING, SHIPPED, DELIVERED, CANCELLED
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")  # PENDING, PAID, FAILED, REFUNDED
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)

    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="GHS")
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    tax: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))

    shipping_address_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    invoice: Mapped[Invoice | None] = relationship(lazy="selectin")
    lead: Mapped[Lead | None] = relationship(lazy="selectin")
    items: Mapped[list["EcommerceOrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="EcommerceOrderItem.id",
    )


class EcommerceOrderItem(Base):
    __tablename__ = "ecommerce_order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("ecommerce_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int | None] = mapped_column(ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    order: Mapped[EcommerceOrder] = relationship(back_populates="items")
