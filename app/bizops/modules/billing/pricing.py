"""
Line and document pricing.

    base           = quantity * unit_price
    discount       = base * discount_percent / 100
    after_discount = base - discount
    line_tax       = sum(tax.amount)
    line_total     = after_discount + line_tax

    subtotal = sum(after_discount); total = subtotal (tax inclusive) or subtotal + tax.

All money is Decimal rounded half-up to cents.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from app.bizops.errors import ValidationError
from app.bizops.tenancy import get_scoped
from app.bizops.utils import ZERO, clean_str, money, to_decimal

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


@dataclass(frozen=True)
class Tax:
    name: str
    amount: Decimal
    rate: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name, "amount": str(self.amount)}
        if self.rate is not None:
            d["rate"] = str(self.rate)
        return d


@dataclass(frozen=True)
class PricedLine:
    quantity: Decimal
    unit_price: Decimal
    discount_percent: Decimal
    base: Decimal
    discount: Decimal
    after_discount: Decimal
    line_tax: Decimal
    line_total: Decimal
    taxes: tuple[Tax, ...] = ()
    product_id: int | None = None
    product_name: str | None = None
    sku: str | None = None
    description: str | None = None

    def taxes_json(self) -> str | None:
        return json.dumps([t.to_dict() for t in self.taxes]) if self.taxes else None

    def column_values(self) -> dict[str, Any]:
        """Values for a ``DocumentLineMixin`` row."""
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "sku": self.sku,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "discount_percent": self.discount_percent,
            "discount_amount": self.discount,
            "taxes_json": self.taxes_json(),
            "line_tax": self.line_tax,
            "line_total": self.line_total,
        }


@dataclass(frozen=True)
class DocumentTotals:
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    lines: tuple[PricedLine, ...] = field(default_factory=tuple)


def price_line(
    quantity: Decimal,
    unit_price: Decimal,
    discount_percent: Decimal = ZERO,
    taxes: list[Tax] | tuple[Tax, ...] = (),
    **descriptive: Any,
) -> PricedLine:
    if quantity <= 0:
        raise ValidationError("Line quantity must be greater than zero.")
    if unit_price < 0:
        raise ValidationError("Line unit price must not be negative.")
    if not ZERO <= discount_percent <= 100:
        raise ValidationError("Line discount must be between 0 and 100 percent.")
    base = money(quantity * unit_price)
    discount = money(base * discount_percent / 100)
    after_discount = base - discount
    line_tax = money(sum((t.amount for t in taxes), ZERO))
    return PricedLine(
        quantity=quantity,
        unit_price=unit_price,
        discount_percent=discount_percent,
        base=base,
        discount=discount,
        after_discount=after_discount,
        line_tax=line_tax,
        line_total=after_discount + line_tax,
        taxes=tuple(taxes),
        **descriptive,
    )


def compute_totals(lines: list[PricedLine] | tuple[PricedLine, ...], *, tax_inclusive: bool) -> DocumentTotals:
    subtotal = money(sum((ln.after_discount for ln in lines), ZERO))
    discount = money(sum((ln.discount for ln in lines), ZERO))
    tax = money(sum((ln.line_tax for ln in lines), ZERO))
    total = subtotal if tax_inclusive else subtotal + tax
    return DocumentTotals(subtotal=subtotal, discount=discount, tax=tax, total=total, lines=tuple(lines))


def parse_taxes(raw: Any, after_discount: Decimal) -> list[Tax]:
    """Taxes as ``[{name, rate?, amount?}]``; a missing amount is computed from the rate."""
    if raw in (None, ""):
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ValidationError("taxes must be a list") from e
    if not isinstance(raw, list):
        raise ValidationError("taxes must be a list")
    taxes: list[Tax] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValidationError("each tax must be an object")
        rate = to_decimal(item.get("rate"), "tax rate") if item.get("rate") not in (None, "") else None
        if item.get("amount") not in (None, ""):
            amount = money(item.get("amount"))
        elif rate is not None:
            amount = money(after_discount * rate / 100)
        else:
            amount = money(0)
        if amount < 0:
            raise ValidationError("Tax amount must not be negative.")
        taxes.append(Tax(name=clean_str(item.get("name")) or "Tax", amount=amount, rate=rate))
    return taxes


def parse_lines(s: "Session", organization_id: int, raw_lines: Any) -> list[PricedLine]:
    """
    Validate and price request lines. Lines may reference a product of the organization;
    a missing name/sku/description/price is filled from it.
    """
    from app.bizops.modules.catalog.models import Product

    if not isinstance(raw_lines, list) or not raw_lines:
        raise ValidationError("At least one line item is required")
    priced: list[PricedLine] = []
    for idx, raw in enumerate(raw_lines, start=1):
        if not isinstance(raw, dict):
            raise ValidationError(f"Line {idx} must be an object")
        product = None
        if raw.get("product_id") not in (None, ""):
            product = get_scoped(s, Product, raw.get("product_id"), organization_id)
            if product is None:
                raise ValidationError(f"Line {idx}: product not found")
        name = clean_str(raw.get("product_name")) or (product.name if product else None)
        if not name and not clean_str(raw.get("description")):
            raise ValidationError(f"Line {idx}: a product or description is required")
        if raw.get("unit_price") in (None, "") and product is None:
            raise ValidationError(f"Line {idx}: unit price is required")
        unit_price = money(raw.get("unit_price")) if raw.get("unit_price") not in (None, "") else Decimal(product.unit_price)
        quantity = to_decimal(raw.get("quantity"), "quantity")
        discount_percent = to_decimal(raw.get("discount_percent", raw.get("discount")), "discount")
        base_after = money(quantity * unit_price) - money(money(quantity * unit_price) * discount_percent / 100)
        taxes = parse_taxes(raw.get("taxes"), base_after)
        try:
            line = price_line(
                quantity,
                unit_price,
                discount_percent,
                taxes,
                product_id=product.id if product else None,
                product_name=name,
                sku=clean_str(raw.get("sku")) or (product.sku if product else None),
                description=clean_str(raw.get("description")) or (product.description if product else None),
            )
        except ValidationError as e:
            raise ValidationError(f"Line {idx}: {e.message}") from e
        priced.append(line)
    return priced
