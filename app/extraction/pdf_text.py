"""
pdfplumber text-layer extractor.

Reads the embedded text of a purchase-order PDF and pulls out the three
fields an invoice needs. Scoring is additive: customer 40, order 30,
amount 30. The analysis pool decides what a score means.
"""

import asyncio
import io
import re
from typing import Optional

import pdfplumber
import structlog

from app.errors import ExtractionError
from app.extraction.amount_parser import parse_amount
from app.extraction.base import FieldExtractor
from app.schemas.batches import ExtractedFields

logger = structlog.get_logger(__name__)

CUSTOMER_SCORE = 40
ORDER_SCORE = 30
AMOUNT_SCORE = 30

ORDER_PATTERNS = [
    re.compile(r"Pedido\s+de\s+compra:\s*(\d+)", re.IGNORECASE),
    re.compile(r"Pedido\s+de\s+compra\s*\(Nuevo\)\s*(\d+)", re.IGNORECASE),
    re.compile(r"\b(\d{10})\b"),
]

AMOUNT_PATTERNS = [
    re.compile(r"Importe:\s*\$\s*([\d,.]+)\s*MXN", re.IGNORECASE),
    re.compile(r"Suma\s+total.*?\$\s*([\d,.]+)", re.IGNORECASE),
    re.compile(r"Total.*?\$\s*([\d,.]+)", re.IGNORECASE),
]


def _first_group(patterns: list[re.Pattern], text: str) -> Optional[str]:
    for pattern in patterns:
        m = pattern.search(text)
        if m and m.group(1):
            return m.group(1)
    return None


def extract_key_fields(text: str, customer_patterns: dict[str, str]) -> ExtractedFields:
    """
    Score a document's text. Pure function, no I/O.

    `customer_patterns` maps a customer short code to the regex that
    identifies it; the first match wins and its code becomes customer_ref.
    """
    confidence = 0
    errors: list[str] = []

    customer_ref = None
    for code, pattern in customer_patterns.items():
        if re.search(pattern, text, re.IGNORECASE):
            customer_ref = code
            confidence += CUSTOMER_SCORE
            break
    if customer_ref is None:
        errors.append("customer not identified")

    order_ref = _first_group(ORDER_PATTERNS, text)
    if order_ref:
        confidence += ORDER_SCORE
    else:
        errors.append("order reference not found")

    amount = None
    raw_amount = _first_group(AMOUNT_PATTERNS, text)
    if raw_amount:
        amount = parse_amount(raw_amount).amount
    if amount:
        confidence += AMOUNT_SCORE
    else:
        amount = None
        errors.append("total amount not found")

    return ExtractedFields(
        customer_ref=customer_ref,
        order_ref=order_ref,
        amount=amount,
        confidence=confidence,
        errors=errors,
    )


def read_text(data: bytes) -> str:
    """Concatenate the text layer of every page. Blocking."""
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as e:
        raise ExtractionError(f"pdfplumber could not read document: {e}") from e
    return "\n".join(pages)


class PdfTextExtractor(FieldExtractor):
    """Extractor for PDFs with an embedded text layer."""

    extractor_name = "pdf_text"

    def __init__(self, customer_patterns: dict[str, str]):
        self.customer_patterns = customer_patterns

    async def extract(self, data: bytes) -> ExtractedFields:
        text = await asyncio.to_thread(read_text, data)
        if not text.strip():
            raise ExtractionError("Document has no text layer")

        fields = extract_key_fields(text, self.customer_patterns)
        logger.debug(
            "pdf_text_extraction_complete",
            chars=len(text),
            customer_ref=fields.customer_ref,
            order_ref=fields.order_ref,
            confidence=fields.confidence,
        )
        return fields
