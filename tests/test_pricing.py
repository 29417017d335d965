from decimal import Decimal

import pytest

from app.bizops.errors import ValidationError
from app.bizops.modules.billing.pricing import Tax, compute_totals, parse_taxes, price_line
from app.bizops.modules.catalog.service import weighted_average_cost
from app.bizops.modules.invoicing.reconciliation import compute_settlement
from app.bizops.utils import money


def test_price_line_discount_and_tax():
    line = price_line(Decimal("3"), Decimal("19.99"), Decimal("10"), [Tax("VAT", Decimal("8.10"))])
    assert line.base == Decimal("59.97")
    assert line.discount == Decimal("6.00")
    assert line.after_discount == Decimal("53.97")
    assert line.line_tax == Decimal("8.10")
    assert line.line_total == Decimal("62.07")


def test_price_line_rejects_bad_input():
    with pytest.raises(ValidationError):
        price_line(Decimal("0"), Decimal("1"))
    with pytest.raises(ValidationError):
        price_line(Decimal("1"), Decimal("-1"))
    with pytest.raises(ValidationError):
        price_line(Decimal("1"), Decimal("1"), Decimal("101"))


def test_totals_tax_exclusive_and_inclusive():
    lines = [
        price_line(Decimal("2"), Decimal("100"), taxes=[Tax("VAT", Decimal("30"))]),
        price_line(Decimal("1"), Decimal("50"), Decimal("20")),
    ]
    exclusive = compute_totals(lines, tax_inclusive=False)
    assert exclusive.subtotal == Decimal("240.00")
    assert exclusive.discount == Decimal("10.00")
    assert exclusive.tax == Decimal("30.00")
    assert exclusive.total == Decimal("270.00")

    inclusive = compute_totals(lines, tax_inclusive=True)
    assert inclusive.total == inclusive.subtotal == Decimal("240.00")


def test_parse_taxes_from_rate():
    taxes = parse_taxes([{"name": "NHIL", "rate": "2.5"}, {"name": "Flat", "amount": "1.00"}], Decimal("200.00"))
    assert [t.amount for t in taxes] == [Decimal("5.00"), Decimal("1.00")]


def test_money_rounds_half_up():
    assert money("2.675") == Decimal("2.68")
    assert money(None) == Decimal("0.00")
    with pytest.raises(ValidationError):
        money("abc")


@pytest.mark.parametrize(
    "total,payments,credits,status,due",
    [
        ("100.00", [], [], "UNPAID", "100.00"),
        ("100.00", ["40.00"], [], "PARTIALLY_PAID", "60.00"),
        ("100.00", ["60.00"], ["40.00"], "PAID", "0.00"),
        ("100.00", ["99.995"], [], "PAID", "0.00"),
        ("100.00", ["120.00"], [], "PAID", "0.00"),
    ],
)
def test_compute_settlement(total, payments, credits, status, due):
    result = compute_settlement(Decimal(total), [Decimal(p) for p in payments], [Decimal(c) for c in credits])
    assert result.payment_status == status
    assert result.amount_due == Decimal(due)


def test_weighted_average_cost():
    assert weighted_average_cost(Decimal("10"), Decimal("10"), Decimal("20"), Decimal("10")) == Decimal("15.0000")
    # negative stock is treated as nothing on hand
    assert weighted_average_cost(Decimal("10"), Decimal("-5"), Decimal("12"), Decimal("2")) == Decimal("12.0000")
