"""
Batch ingestion and validation.

A batch is admitted only if the whole group passes: item count, accepted
type and total size. Every violation is reported at once and nothing is
written on rejection. Admitted batches are written as `collecting` and moved
straight to `analyzing`.

Uploads that arrive one message at a time are buffered in a collector
record (same Redis, own key prefix and short TTL) until the caller signals
that the group is complete.
"""

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from app.config import Settings
from app.errors import ValidationError
from app.models.enums import BatchStatus
from app.observability.metrics import batches_created_total, batches_rejected_total
from app.pipeline.state_machine import transition_guard, transition_partial
from app.schemas.batches import BatchDocument, BatchItem, BatchJob
from app.state.store import BatchStateStore

logger = structlog.get_logger(__name__)

MB = 1024 * 1024


def generate_batch_id(owner_id: str, group_id: Optional[str] = None) -> str:
    """The upload group id when there is one, otherwise single_<ms timestamp>_<owner>."""
    if group_id:
        return group_id
    return f"single_{int(time.time() * 1000)}_{owner_id}"


class BatchIngestor:
    def __init__(
        self,
        store: BatchStateStore,
        collector_store: BatchStateStore,
        config: Settings,
    ):
        self.store = store
        self.collector_store = collector_store
        self.max_items = config.MAX_BATCH_ITEMS
        self.max_total_bytes = config.MAX_BATCH_TOTAL_MB * MB
        self.allowed_types = {
            t.strip().lower() for t in config.ALLOWED_MIME_TYPES.split(",") if t.strip()
        }
        self.batch_ttl = config.BATCH_TTL_SECONDS
        self.collector_ttl = config.COLLECTOR_TTL_SECONDS
        self.series = config.FOLIO_SERIES

    def validate(self, documents: list[BatchDocument]) -> list[str]:
        """Every violation in the group, empty when the batch is acceptable."""
        violations = []

        if not documents:
            violations.append("batch contains no documents")
        elif len(documents) > self.max_items:
            violations.append(
                f"batch contains {len(documents)} documents; the limit is {self.max_items}"
            )

        for doc in documents:
            if not self._accepted_type(doc):
                violations.append(
                    f"{doc.name}: unsupported type {doc.content_type or 'unknown'}, only PDF is accepted"
                )

        total = sum(doc.size_bytes for doc in documents)
        if total > self.max_total_bytes:
            violations.append(
                f"total size {total / MB:.1f} MB exceeds the {self.max_total_bytes // MB} MB limit"
            )

        return violations

    async def create_batch(
        self,
        tenant_id: str,
        owner_id: str,
        documents: list[BatchDocument],
        batch_id: Optional[str] = None,
    ) -> BatchJob:
        violations = self.validate(documents)
        batch_id = generate_batch_id(owner_id, batch_id)

        if violations:
            self._reject(owner_id, batch_id, violations)

        now = datetime.now(timezone.utc)
        items = {}
        for position, doc in enumerate(documents):
            item_id = uuid.uuid4().hex[:12]
            items[item_id] = BatchItem(
                id=item_id,
                position=position,
                source_name=doc.name,
                source_uri=doc.source_uri,
                content_type=doc.content_type,
                size_bytes=doc.size_bytes,
            )

        batch = BatchJob(
            id=batch_id,
            tenant_id=tenant_id,
            owner_id=owner_id,
            status=BatchStatus.COLLECTING,
            items=items,
            series=self.series,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=self.batch_ttl),
        )
        if not await self.store.create(owner_id, batch_id, batch.to_record(), ttl=self.batch_ttl):
            self._reject(owner_id, batch_id, [f"batch {batch_id} already exists"])

        record = await self.store.update(
            owner_id,
            batch_id,
            transition_partial(BatchStatus.ANALYZING),
            precondition=transition_guard(BatchStatus.ANALYZING),
        )

        batches_created_total.inc()
        logger.info(
            "batch_created",
            batch_id=batch_id,
            owner_id=owner_id,
            item_count=len(items),
            total_bytes=sum(doc.size_bytes for doc in documents),
        )
        return BatchJob.model_validate(record).model_copy(update={"degraded": self.store.degraded})

    # ── Upload collector ─────────────────────────────────────

    async def collect(self, owner_id: str, group_id: str, document: BatchDocument) -> int:
        """Buffer one document for `group_id`. Returns how many are buffered."""
        entry_key = f"{time.time_ns():020d}-{uuid.uuid4().hex[:6]}"
        record = await self.collector_store.update(
            owner_id,
            group_id,
            {"documents": {entry_key: document.model_dump(mode="json")}},
            precondition=_collector_open(group_id),
            create_ttl=self.collector_ttl,
        )
        count = len(record.get("documents", {}))
        logger.debug("document_collected", group_id=group_id, owner_id=owner_id, count=count)
        return count

    async def flush(self, owner_id: str, group_id: str) -> list[BatchDocument]:
        """Close the collector and return its documents in arrival order."""
        record = await self.collector_store.update(
            owner_id,
            group_id,
            {"flushed": True},
            precondition=_collector_open(group_id),
        )
        await self.collector_store.delete(owner_id, group_id)
        documents = record.get("documents", {})
        return [BatchDocument.model_validate(documents[key]) for key in sorted(documents)]

    def _reject(self, owner_id: str, batch_id: str, violations: list[str]) -> None:
        batches_rejected_total.inc()
        logger.warning(
            "batch_rejected",
            batch_id=batch_id,
            owner_id=owner_id,
            violations=violations,
        )
        raise ValidationError(violations)

    def _accepted_type(self, doc: BatchDocument) -> bool:
        if doc.content_type and doc.content_type.split(";")[0].strip().lower() in self.allowed_types:
            return True
        return doc.name.lower().endswith(".pdf")


def _collector_open(group_id: str):
    def _guard(record: dict) -> None:
        if record.get("flushed"):
            raise ValidationError([f"upload group {group_id} is already closed"])

    return _guard
