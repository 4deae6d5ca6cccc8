"""
Tests for text-layer field extraction and scoring.
"""

from decimal import Decimal

import pytest

from app.config import Settings
from app.errors import ExtractionError
from app.extraction.pdf_text import PdfTextExtractor, extract_key_fields

PATTERNS = Settings().EXTRACTOR_CUSTOMER_PATTERNS

FULL_ORDER = """
PROTECCION S.O.S. JURIDICO S.A. DE C.V.
Pedido de compra: 4500012345
Servicio de arrastre
Importe: $ 1,160.00 MXN
"""


class TestExtractKeyFields:

    def test_all_fields_score_full(self):
        fields = extract_key_fields(FULL_ORDER, PATTERNS)
        assert fields.customer_ref == "SOS"
        assert fields.order_ref == "4500012345"
        assert fields.amount == Decimal("1160.00")
        assert fields.confidence == 100
        assert fields.errors == []

    def test_missing_customer_costs_forty(self):
        text = "Pedido de compra: 4500012345\nImporte: $ 1,160.00 MXN"
        fields = extract_key_fields(text, PATTERNS)
        assert fields.customer_ref is None
        assert fields.confidence == 60
        assert "customer not identified" in fields.errors

    def test_new_order_format(self):
        text = "ARSA ASESORIA INTEGRAL PROFESIONAL\nPedido de compra (Nuevo) 12345\nSuma total $ 80,57"
        fields = extract_key_fields(text, PATTERNS)
        assert fields.customer_ref == "ARSA"
        assert fields.order_ref == "12345"
        assert fields.amount == Decimal("80.57")
        assert fields.confidence == 100

    def test_bare_ten_digit_order_number(self):
        text = "INFOASIST INFORMACION Y ASISTENCIA\nOrden 4500099999\nTotal $ 2.500,00"
        fields = extract_key_fields(text, PATTERNS)
        assert fields.order_ref == "4500099999"
        assert fields.amount == Decimal("2500.00")

    def test_customer_match_is_case_insensitive(self):
        fields = extract_key_fields("proteccion s.o.s. juridico", PATTERNS)
        assert fields.customer_ref == "SOS"
        assert fields.confidence == 40

    def test_nothing_found(self):
        fields = extract_key_fields("", PATTERNS)
        assert fields.confidence == 0
        assert len(fields.errors) == 3

    def test_zero_amount_not_counted(self):
        text = "Pedido de compra: 4500012345\nImporte: $ 0 MXN"
        fields = extract_key_fields(text, PATTERNS)
        assert fields.amount is None
        assert "total amount not found" in fields.errors


class TestPdfTextExtractor:

    def test_name(self):
        assert PdfTextExtractor(PATTERNS).extractor_name == "pdf_text"

    @pytest.mark.asyncio
    async def test_unreadable_document_raises(self):
        with pytest.raises(ExtractionError):
            await PdfTextExtractor(PATTERNS).extract(b"this is not a pdf")
