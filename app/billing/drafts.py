"""
Builds line items and invoice drafts from analyzed batch items.
"""

from decimal import Decimal
from typing import Optional

from app.billing.calculator import compare_treatments, standard_taxes
from app.config import Settings
from app.models.enums import TaxTreatment
from app.schemas.batches import BatchItem, TreatmentPreview
from app.schemas.invoices import InvoiceDraft, LineItem


class DraftBuilder:
    """Turns extracted fields into provider-ready drafts using catalog defaults."""

    def __init__(self, config: Settings):
        self.tax_rate = Decimal(config.TAX_RATE)
        self.withholding_rate = Decimal(config.WITHHOLDING_RATE)
        self.product_key = config.PRODUCT_KEY
        self.unit_key = config.UNIT_KEY
        self.unit_name = config.UNIT_NAME
        self.description_template = config.ITEM_DESCRIPTION
        self.cfdi_use = config.CFDI_USE
        self.payment_form = config.PAYMENT_FORM
        self.payment_method = config.PAYMENT_METHOD
        self.currency = config.CURRENCY

    def build_lines(
        self,
        order_ref: Optional[str],
        amount: Decimal,
        include_withholding: bool,
    ) -> list[LineItem]:
        taxes = standard_taxes(
            self.tax_rate,
            self.withholding_rate if include_withholding else None,
        )
        return [
            LineItem(
                quantity=Decimal("1"),
                unit_price=amount,
                tax_included=False,
                taxes=taxes,
                description=self.description_template.format(order_ref=order_ref or ""),
                product_key=self.product_key,
                unit_key=self.unit_key,
                unit_name=self.unit_name,
            )
        ]

    def preview(self, item: BatchItem) -> TreatmentPreview:
        """Pre-compute both treatments for an analyzed item."""
        fields = item.extracted_fields
        lines = self.build_lines(fields.order_ref, fields.amount, include_withholding=True)
        variants = compare_treatments(lines)
        suggested = (
            TaxTreatment.WITHHOLDING if item.withholding_eligible else TaxTreatment.NO_WITHHOLDING
        )
        return TreatmentPreview(
            withholding=variants[TaxTreatment.WITHHOLDING],
            no_withholding=variants[TaxTreatment.NO_WITHHOLDING],
            suggested=suggested,
        )

    def build_draft(
        self,
        tenant_id: str,
        customer_id: str,
        order_ref: Optional[str],
        amount: Decimal,
        treatment: TaxTreatment,
        series: str,
        folio: int,
        customer_name: Optional[str] = None,
    ) -> InvoiceDraft:
        withholding = treatment is TaxTreatment.WITHHOLDING
        return InvoiceDraft(
            tenant_id=tenant_id,
            customer_id=customer_id,
            customer_name=customer_name,
            order_ref=order_ref,
            series=series,
            folio=folio,
            lines=self.build_lines(order_ref, amount, include_withholding=withholding),
            withholding=withholding,
            cfdi_use=self.cfdi_use,
            payment_form=self.payment_form,
            payment_method=self.payment_method,
            currency=self.currency,
        )

    def draft_for_item(
        self,
        tenant_id: str,
        item: BatchItem,
        treatment: TaxTreatment,
        series: str,
        folio: int,
    ) -> InvoiceDraft:
        fields = item.extracted_fields
        return self.build_draft(
            tenant_id=tenant_id,
            customer_id=item.customer_id,
            customer_name=item.customer_name,
            order_ref=fields.order_ref,
            amount=fields.amount,
            treatment=treatment,
            series=series,
            folio=folio,
        )
