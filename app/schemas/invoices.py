"""
Invoice-side schemas: line items, computed breakdowns, drafts and provider results.
Money is always Decimal; floats never enter a computation.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from app.models.enums import PriorityTier, SubmissionResult


class TaxRate(BaseModel):
    """A tax applied to a line. Withholding taxes subtract from the total."""
    rate: Decimal = Field(ge=0)
    withholding: bool = False
    label: str = "IVA"

    @property
    def key(self) -> str:
        kind = "withheld" if self.withholding else "transferred"
        return f"{self.label} {self.rate * 100:.2f}% {kind}"


class LineItem(BaseModel):
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    unit_price: Decimal = Field(ge=0)
    tax_included: bool = False
    taxes: list[TaxRate] = []
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    description: str = ""
    product_key: str = ""
    unit_key: str = ""
    unit_name: str = ""


class FinancialBreakdown(BaseModel):
    """Derived totals. Recomputed from line items, never stored as truth."""
    subtotal: Decimal
    taxes: dict[str, Decimal] = {}
    tax_total: Decimal
    withheld: Decimal
    discount: Decimal
    total: Decimal


class InvoiceDraft(BaseModel):
    """A fully specified invoice ready for the provider, folio included."""
    tenant_id: str
    customer_id: str
    customer_name: Optional[str] = None
    order_ref: Optional[str] = None
    series: str
    folio: int
    lines: list[LineItem]
    withholding: bool = False
    cfdi_use: str = "G03"
    payment_form: str = "99"
    payment_method: str = "PPD"
    currency: str = "MXN"

    def to_provider_payload(self) -> dict:
        """Provider wire format (FacturAPI-style invoice create body)."""
        items = []
        for line in self.lines:
            product = {
                "description": line.description,
                "product_key": line.product_key,
                "price": float(line.unit_price),
                "tax_included": line.tax_included,
                "taxes": [
                    {
                        "type": t.label,
                        "rate": float(t.rate),
                        "factor": "Tasa",
                        **({"withholding": True} if t.withholding else {}),
                    }
                    for t in line.taxes
                ],
            }
            if line.unit_key:
                product["unit_key"] = line.unit_key
            if line.unit_name:
                product["unit_name"] = line.unit_name
            item = {"quantity": float(line.quantity), "product": product}
            if line.discount:
                item["discount"] = float(line.discount)
            items.append(item)

        return {
            "customer": self.customer_id,
            "items": items,
            "use": self.cfdi_use,
            "payment_form": self.payment_form,
            "payment_method": self.payment_method,
            "currency": self.currency,
            "series": self.series,
            "folio_number": self.folio,
        }


class ProviderInvoice(BaseModel):
    """Result of a successful stamping call."""
    provider_invoice_id: str
    stamp: Optional[dict] = None
    series: Optional[str] = None
    folio_number: Optional[int] = None
    total: Optional[Decimal] = None


class QueuedSubmission(BaseModel):
    """An allocated draft travelling through the submission queue."""
    submission_id: str
    draft: InvoiceDraft
    priority: PriorityTier = PriorityTier.BATCH
    attempts: int = 0
    owner_id: Optional[str] = None
    batch_id: Optional[str] = None
    item_id: Optional[str] = None

    @property
    def belongs_to_batch(self) -> bool:
        return bool(self.owner_id and self.batch_id and self.item_id)


class SubmissionOutcome(BaseModel):
    submission_id: str
    result: SubmissionResult
    attempts: int
    folio: int
    invoice: Optional[ProviderInvoice] = None
    error: Optional[str] = None
