"""
Tests for draft and preview building.
"""

from decimal import Decimal

from app.billing.drafts import DraftBuilder
from app.config import Settings
from app.models.enums import ItemStatus, TaxTreatment
from app.schemas.batches import BatchItem, ExtractedFields

BUILDER = DraftBuilder(Settings())


def analyzed_item(eligible: bool) -> BatchItem:
    return BatchItem(
        id="item1",
        position=0,
        source_name="pedido.pdf",
        source_uri="uploads/x/pedido.pdf",
        status=ItemStatus.ANALYZED,
        extracted_fields=ExtractedFields(
            customer_ref="SOS", order_ref="4500012345", amount=Decimal("1000.00"), confidence=100
        ),
        customer_id="cus_sos",
        customer_name="PROTECCION S.O.S. JURIDICO",
        withholding_eligible=eligible,
    )


class TestDraftBuilder:

    def test_withholding_draft(self):
        draft = BUILDER.draft_for_item("tenant-1", analyzed_item(True), TaxTreatment.WITHHOLDING, "A", 800)
        assert draft.withholding is True
        assert draft.customer_id == "cus_sos"
        assert [t.withholding for t in draft.lines[0].taxes] == [False, True]
        assert "4500012345" in draft.lines[0].description

    def test_no_withholding_draft(self):
        draft = BUILDER.draft_for_item("tenant-1", analyzed_item(True), TaxTreatment.NO_WITHHOLDING, "A", 801)
        assert draft.withholding is False
        assert [t.withholding for t in draft.lines[0].taxes] == [False]

    def test_payload_carries_series_and_folio(self):
        draft = BUILDER.draft_for_item("tenant-1", analyzed_item(False), TaxTreatment.WITHHOLDING, "A", 812)
        payload = draft.to_provider_payload()
        assert payload["series"] == "A"
        assert payload["folio_number"] == 812
        assert payload["customer"] == "cus_sos"
        taxes = payload["items"][0]["product"]["taxes"]
        assert {"type": "IVA", "rate": 0.04, "factor": "Tasa", "withholding": True} in taxes
        assert payload["items"][0]["product"]["price"] == 1000.0


class TestPreview:

    def test_both_treatments(self):
        preview = BUILDER.preview(analyzed_item(True))
        assert preview.withholding.total == Decimal("1120.00")
        assert preview.no_withholding.total == Decimal("1160.00")

    def test_suggestion_follows_customer_eligibility(self):
        assert BUILDER.preview(analyzed_item(True)).suggested is TaxTreatment.WITHHOLDING
        assert BUILDER.preview(analyzed_item(False)).suggested is TaxTreatment.NO_WITHHOLDING
