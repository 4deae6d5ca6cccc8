"""
Error taxonomy for the invoicing pipeline.

Batch-level errors (ValidationError, total StateStoreError) abort the batch.
Item-level errors are captured onto the BatchItem and reported in the summary.
"""

from typing import Optional


class PipelineError(Exception):
    """Base pipeline error."""

    error_code = "ERR_PIPELINE"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)


class ValidationError(PipelineError):
    """Batch shape/size/type violation. The whole batch is rejected."""

    error_code = "ERR_VALIDATION"

    def __init__(self, violations: list[str]):
        self.violations = violations
        super().__init__("; ".join(violations))


class ExtractionError(PipelineError):
    """Field extraction failed for a single document."""

    error_code = "ERR_EXTRACTION"


class SourceFetchError(PipelineError):
    """A source document could not be downloaded or read."""

    error_code = "ERR_SOURCE_FETCH"


class AllocationError(PipelineError):
    """Folio counter update could not be confirmed. No folio was consumed."""

    error_code = "ERR_ALLOCATION"


class ProviderError(PipelineError):
    """Invoicing provider rejected or failed a call."""

    error_code = "ERR_PROVIDER"

    def __init__(self, message: str, retryable: bool, status_code: Optional[int] = None):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class StateStoreError(PipelineError):
    """Neither the distributed store nor the in-process fallback could serve the call."""

    error_code = "ERR_STATE_STORE"


class PackagingError(PipelineError):
    """A single rendition could not be fetched or archived."""

    error_code = "ERR_PACKAGING"

    def __init__(self, item_id: str, message: str):
        self.item_id = item_id
        super().__init__(message)


class BatchNotFoundError(PipelineError):
    """No record for (owner, batch). It expired or was never created."""

    error_code = "ERR_BATCH_NOT_FOUND"


class InvalidTransitionError(PipelineError):
    """Requested status change is not allowed from the current status."""

    error_code = "ERR_INVALID_TRANSITION"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move batch from {current} to {target}")
