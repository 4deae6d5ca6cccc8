"""
Parallel analysis worker pool.

Fans out over every item of a batch (bounded by a semaphore), downloads the
source, runs the field extractor under a timeout and resolves the customer.
A failure is confined to its own item. When every item has resolved, one
consolidated snapshot (items + treatment previews) is written together with
the status change, so readers never see a half-analyzed batch marked ready.
"""

import asyncio
import time

import structlog

from app.billing.drafts import DraftBuilder
from app.errors import ExtractionError, InvalidTransitionError, SourceFetchError
from app.extraction.base import FieldExtractor
from app.integrations.directory import CustomerDirectory
from app.integrations.sources import SourceFetcher
from app.models.enums import BatchStatus, ItemStatus
from app.observability.logging import bind_batch_context
from app.observability.metrics import item_analysis_duration_seconds, items_analyzed_total
from app.pipeline.state_machine import transition_guard, transition_partial
from app.schemas.batches import BatchItem, BatchJob
from app.state.store import BatchStateStore
from app.storage.artifact_store import ArtifactStore
from app.storage.paths import source_dir, source_path

logger = structlog.get_logger(__name__)


class AnalysisPool:
    def __init__(
        self,
        store: BatchStateStore,
        fetcher: SourceFetcher,
        extractor: FieldExtractor,
        directory: CustomerDirectory,
        drafts: DraftBuilder,
        artifact_store: ArtifactStore,
        max_fanout: int = 10,
        item_timeout: float = 30.0,
        min_confidence: int = 50,
        review_confidence: int = 70,
    ):
        self.store = store
        self.fetcher = fetcher
        self.extractor = extractor
        self.directory = directory
        self.drafts = drafts
        self.artifact_store = artifact_store
        self.max_fanout = max_fanout
        self.item_timeout = item_timeout
        self.min_confidence = min_confidence
        self.review_confidence = review_confidence

    async def run(self, batch: BatchJob) -> BatchJob:
        """Analyze every item and move the batch out of `analyzing`."""
        bind_batch_context(batch.id, batch.owner_id)
        start = time.perf_counter()
        semaphore = asyncio.Semaphore(self.max_fanout)

        async def bounded(item: BatchItem) -> BatchItem:
            async with semaphore:
                return await self._analyze_item(batch, item)

        items = batch.ordered_items()
        results = await asyncio.gather(*(bounded(item) for item in items), return_exceptions=True)

        analyzed: dict[str, BatchItem] = {}
        for item, result in zip(items, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(
                    "item_analysis_crashed",
                    item_id=item.id,
                    error=f"{type(result).__name__}: {result}",
                )
                result = self._failed(item, f"unexpected error: {type(result).__name__}")
            analyzed[item.id] = result

        previews = {
            item.id: self.drafts.preview(item).model_dump(mode="json")
            for item in analyzed.values()
            if item.status is ItemStatus.ANALYZED
        }
        target = BatchStatus.AWAITING_CONFIRMATION if previews else BatchStatus.FAILED

        try:
            record = await self.store.update(
                batch.owner_id,
                batch.id,
                transition_partial(
                    target,
                    items={item_id: item.model_dump(mode="json") for item_id, item in analyzed.items()},
                    previews=previews,
                ),
                precondition=transition_guard(target),
            )
        except InvalidTransitionError as e:
            # Canceled while analyzing: the cancel wins, results are dropped.
            logger.info("analysis_discarded", current_status=e.current)
            record = await self.store.get(batch.owner_id, batch.id) or batch.to_record()
        finally:
            self._cleanup(batch)

        logger.info(
            "batch_analysis_complete",
            status=record.get("status"),
            analyzed=len(previews),
            failed=len(analyzed) - len(previews),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return BatchJob.model_validate(record).model_copy(update={"degraded": self.store.degraded})

    async def _analyze_item(self, batch: BatchJob, item: BatchItem) -> BatchItem:
        start = time.perf_counter()
        try:
            return await self._analyze(batch, item)
        finally:
            item_analysis_duration_seconds.observe(time.perf_counter() - start)

    async def _analyze(self, batch: BatchJob, item: BatchItem) -> BatchItem:
        try:
            data = await asyncio.wait_for(self.fetcher.fetch(item.source_uri), self.item_timeout)
        except asyncio.TimeoutError:
            return self._failed(item, f"download timed out after {self.item_timeout:g}s")
        except SourceFetchError as e:
            return self._failed(item, f"download failed: {e.message}")

        self.artifact_store.save_bytes(source_path(batch.owner_id, batch.id, item.id), data)
        await self._mark(batch, item, ItemStatus.DOWNLOADED)

        try:
            fields = await asyncio.wait_for(self.extractor.extract(data), self.item_timeout)
        except asyncio.TimeoutError:
            return self._failed(item, f"extraction timed out after {self.item_timeout:g}s")
        except ExtractionError as e:
            return self._failed(item, f"extraction failed: {e.message}")

        item = item.model_copy(update={"extracted_fields": fields})

        if fields.confidence < self.min_confidence:
            detail = "; ".join(fields.errors)
            reason = f"confidence {fields.confidence} below minimum {self.min_confidence}"
            return self._failed(item, f"{reason} ({detail})" if detail else reason)

        missing = [
            name for name, value in (
                ("customer", fields.customer_ref),
                ("order reference", fields.order_ref),
                ("amount", fields.amount),
            )
            if not value
        ]
        if missing:
            return self._failed(item, f"missing fields: {', '.join(missing)}")

        customer = await self.directory.resolve(batch.tenant_id, fields.customer_ref)
        if customer is None:
            return self._failed(item, f"customer {fields.customer_ref!r} not found in directory")

        warnings = list(item.warnings)
        if fields.confidence < self.review_confidence:
            warnings.append(
                f"low confidence ({fields.confidence}); review before confirming"
            )

        items_analyzed_total.labels(outcome="analyzed").inc()
        logger.info(
            "item_analyzed",
            item_id=item.id,
            customer_id=customer.customer_id,
            order_ref=fields.order_ref,
            confidence=fields.confidence,
        )
        return item.model_copy(update={
            "status": ItemStatus.ANALYZED,
            "customer_id": customer.customer_id,
            "customer_name": customer.legal_name,
            "withholding_eligible": customer.withholding_eligible,
            "warnings": warnings,
            "error": None,
        })

    async def _mark(self, batch: BatchJob, item: BatchItem, status: ItemStatus) -> None:
        await self.store.update(
            batch.owner_id,
            batch.id,
            {"items": {item.id: {"status": status.value}}},
        )

    def _failed(self, item: BatchItem, reason: str) -> BatchItem:
        items_analyzed_total.labels(outcome="failed").inc()
        logger.info("item_analysis_failed", item_id=item.id, reason=reason)
        return item.model_copy(update={"status": ItemStatus.ANALYSIS_FAILED, "error": reason})

    def _cleanup(self, batch: BatchJob) -> None:
        """Drop transient copies and consumed uploads. Failures are only logged."""
        paths = [
            item.source_uri for item in batch.items.values()
            if not item.source_uri.startswith(("http://", "https://"))
        ]
        try:
            self.artifact_store.delete_tree(source_dir(batch.owner_id, batch.id))
            for path in paths:
                self.artifact_store.delete(path)
        except (OSError, ValueError) as e:
            logger.warning("source_cleanup_failed", error=str(e))
