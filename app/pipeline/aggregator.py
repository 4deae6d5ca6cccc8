"""
Result aggregator: partitions a batch's items into succeeded / failed / pending.

Once a batch is terminal, `pending` is always empty: items that never reached
the provider (analysis failures, allocation failures, cancellation) are
reported as failed with a reason, so succeeded + failed covers every item.
"""

from app.models.enums import TERMINAL_BATCH_STATUSES, ItemStatus
from app.schemas.batches import BatchItem, BatchJob, BatchSummary, ItemOutcome


def _outcome(item: BatchItem, reason=None) -> ItemOutcome:
    return ItemOutcome(
        item_id=item.id,
        source_name=item.source_name,
        status=item.status,
        folio=item.folio,
        invoice_ref=item.invoice_ref,
        reason=reason,
    )


def summarize(batch: BatchJob) -> BatchSummary:
    terminal = batch.status in TERMINAL_BATCH_STATUSES
    succeeded, failed, pending = [], [], []

    for item in batch.ordered_items():
        if item.status is ItemStatus.SUBMITTED:
            succeeded.append(_outcome(item))
        elif item.status in (ItemStatus.ANALYSIS_FAILED, ItemStatus.SUBMIT_FAILED):
            failed.append(_outcome(item, item.error or item.status.value))
        elif terminal:
            failed.append(_outcome(item, item.error or f"not submitted (batch {batch.status.value})"))
        else:
            pending.append(_outcome(item))

    return BatchSummary(
        batch_id=batch.id,
        status=batch.status,
        total=len(batch.items),
        succeeded=succeeded,
        failed=failed,
        pending=pending,
    )
