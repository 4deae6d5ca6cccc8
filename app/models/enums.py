"""
Status and classification enums.
Values are the wire/storage representation: they appear in batch records,
API responses and the state machine table.
"""

from enum import Enum


class BatchStatus(str, Enum):
    COLLECTING = "collecting"
    ANALYZING = "analyzing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_BATCH_STATUSES = frozenset({
    BatchStatus.COMPLETED,
    BatchStatus.FAILED,
    BatchStatus.CANCELED,
})


class ItemStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADED = "downloaded"
    ANALYZED = "analyzed"
    ANALYSIS_FAILED = "analysis_failed"
    QUEUED = "queued"
    SUBMITTED = "submitted"
    SUBMIT_FAILED = "submit_failed"


TERMINAL_ITEM_STATUSES = frozenset({
    ItemStatus.ANALYSIS_FAILED,
    ItemStatus.SUBMITTED,
    ItemStatus.SUBMIT_FAILED,
})


class TaxTreatment(str, Enum):
    WITHHOLDING = "withholding"
    NO_WITHHOLDING = "no_withholding"


class PriorityTier(str, Enum):
    """Submission tiers. Lower rank dispatches first."""
    INTERACTIVE = "interactive"
    BATCH = "batch"

    @property
    def rank(self) -> int:
        return 0 if self is PriorityTier.INTERACTIVE else 1


class SubmissionResult(str, Enum):
    SUBMITTED = "submitted"
    FAILED = "failed"
    CANCELED = "canceled"


class RenditionFormat(str, Enum):
    PDF = "pdf"
    XML = "xml"
