"""
Batch-side schemas: BatchJob, BatchItem and the API request/response shapes.

A BatchJob is stored as one JSON record in the batch state store. Items are a
mapping keyed by item id so that partial updates can target a single item
without rewriting its siblings.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from app.models.enums import BatchStatus, ItemStatus, TaxTreatment
from app.schemas.invoices import FinancialBreakdown


# ── Inputs ───────────────────────────────────────────────────

class BatchDocument(BaseModel):
    """A source document as handed over by the ingestion transport."""
    name: str
    content_type: Optional[str] = None
    size_bytes: int = Field(default=0, ge=0)
    source_uri: str


class ExtractedFields(BaseModel):
    """Extractor output contract. Confidence is a 0-100 score."""
    customer_ref: Optional[str] = None
    order_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    confidence: int = Field(default=0, ge=0, le=100)
    errors: list[str] = []


# ── Batch record ─────────────────────────────────────────────

class BatchItem(BaseModel):
    id: str
    position: int
    source_name: str
    source_uri: str
    content_type: Optional[str] = None
    size_bytes: int = 0
    status: ItemStatus = ItemStatus.PENDING
    extracted_fields: Optional[ExtractedFields] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    withholding_eligible: Optional[bool] = None
    warnings: list[str] = []
    error: Optional[str] = None
    folio: Optional[int] = None
    attempts: int = 0
    invoice_ref: Optional[str] = None


class TreatmentPreview(BaseModel):
    """Both tax treatments computed for one item before confirmation."""
    withholding: FinancialBreakdown
    no_withholding: FinancialBreakdown
    suggested: TaxTreatment


class BatchJob(BaseModel):
    id: str
    tenant_id: str
    owner_id: str
    status: BatchStatus = BatchStatus.COLLECTING
    items: dict[str, BatchItem] = {}
    series: str = "A"
    selected_treatment: Optional[TaxTreatment] = None
    previews: dict[str, TreatmentPreview] = {}
    created_at: datetime
    updated_at: Optional[datetime] = None
    expires_at: datetime
    degraded: bool = False

    def ordered_items(self) -> list[BatchItem]:
        return sorted(self.items.values(), key=lambda item: item.position)

    def items_with_status(self, *statuses: ItemStatus) -> list[BatchItem]:
        return [item for item in self.ordered_items() if item.status in statuses]

    def to_record(self) -> dict:
        """JSON-safe dict for the state store. `degraded` is a read-time flag."""
        return self.model_dump(mode="json", exclude={"degraded"})


# ── Outputs ──────────────────────────────────────────────────

class ItemOutcome(BaseModel):
    item_id: str
    source_name: str
    status: ItemStatus
    folio: Optional[int] = None
    invoice_ref: Optional[str] = None
    reason: Optional[str] = None


class BatchSummary(BaseModel):
    batch_id: str
    status: BatchStatus
    total: int
    succeeded: list[ItemOutcome] = []
    failed: list[ItemOutcome] = []
    pending: list[ItemOutcome] = []


class ItemPreview(BaseModel):
    item_id: str
    source_name: str
    customer_name: Optional[str] = None
    order_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    warnings: list[str] = []
    preview: TreatmentPreview


class BatchPreview(BaseModel):
    """Per-item previews plus batch totals for each treatment."""
    batch_id: str
    status: BatchStatus
    items: list[ItemPreview] = []
    totals: dict[TaxTreatment, FinancialBreakdown] = {}


class BatchCreatedResponse(BaseModel):
    batch_id: str
    status: BatchStatus
    item_count: int
    degraded: bool = False


class ConfirmRequest(BaseModel):
    treatment: TaxTreatment


class ConfirmAcceptedResponse(BaseModel):
    batch_id: str
    treatment: TaxTreatment
    items: int


class CollectResponse(BaseModel):
    group_id: str
    collected: int


class SingleInvoiceRequest(BaseModel):
    """Ad-hoc interactive invoice, dispatched ahead of batch work."""
    customer_ref: str
    order_ref: str
    amount: Decimal = Field(gt=0)
    treatment: TaxTreatment = TaxTreatment.NO_WITHHOLDING


class SingleInvoiceResponse(BaseModel):
    result: str
    folio: int
    series: str
    invoice_ref: Optional[str] = None
    error: Optional[str] = None
    totals: FinancialBreakdown
