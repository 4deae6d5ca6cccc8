"""
Financial calculator: subtotal, taxes, withholding and grand total from line items.

Pure functions. Rounding (half-up, 2 decimals) is applied only to the
aggregated sums, never per line, so the same lines always produce the same
totals regardless of how they are grouped.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from app.models.enums import TaxTreatment
from app.schemas.invoices import FinancialBreakdown, LineItem, TaxRate

CENT = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    """Half-up rounding to cents."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def primary_rate(taxes: Iterable[TaxRate]) -> Decimal:
    """First transferred (non-withholding) rate, used to back out inclusive prices."""
    for tax in taxes:
        if not tax.withholding:
            return tax.rate
    return Decimal("0")


def exclusive_unit_price(line: LineItem) -> Decimal:
    if not line.tax_included:
        return line.unit_price
    return line.unit_price / (Decimal("1") + primary_rate(line.taxes))


def calculate(lines: list[LineItem], withholding_eligible: bool) -> FinancialBreakdown:
    """
    Compute a FinancialBreakdown.

    Withholding rates are applied only when `withholding_eligible` is true;
    otherwise they are ignored, which is what lets an operator compare both
    treatments over the same lines.
    """
    subtotal = Decimal("0")
    tax_total = Decimal("0")
    withheld = Decimal("0")
    discount = Decimal("0")
    per_tax: dict[str, Decimal] = {}

    for line in lines:
        line_subtotal = line.quantity * exclusive_unit_price(line)
        subtotal += line_subtotal
        discount += line.discount

        for tax in line.taxes:
            amount = line_subtotal * tax.rate
            if tax.withholding:
                if not withholding_eligible:
                    continue
                withheld += amount
            else:
                tax_total += amount
            per_tax[tax.key] = per_tax.get(tax.key, Decimal("0")) + amount

    return FinancialBreakdown(
        subtotal=round_money(subtotal),
        taxes={key: round_money(value) for key, value in per_tax.items()},
        tax_total=round_money(tax_total),
        withheld=round_money(withheld),
        discount=round_money(discount),
        total=round_money(subtotal + tax_total - withheld - discount),
    )


def compare_treatments(lines: list[LineItem]) -> dict[TaxTreatment, FinancialBreakdown]:
    """Both variants side by side, for the confirmation step."""
    return {
        TaxTreatment.WITHHOLDING: calculate(lines, withholding_eligible=True),
        TaxTreatment.NO_WITHHOLDING: calculate(lines, withholding_eligible=False),
    }


def standard_taxes(
    tax_rate: Decimal,
    withholding_rate: Optional[Decimal] = None,
) -> list[TaxRate]:
    """Transferred IVA plus, optionally, the withheld IVA portion."""
    taxes = [TaxRate(rate=tax_rate, label="IVA")]
    if withholding_rate is not None:
        taxes.append(TaxRate(rate=withholding_rate, label="IVA", withholding=True))
    return taxes
