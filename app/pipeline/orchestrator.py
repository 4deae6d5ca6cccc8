"""
Pipeline orchestrator: the single entry point for the API and the RQ jobs.

Stages: INGEST → ANALYZE → (operator confirms treatment) → ALLOCATE → SUBMIT → AGGREGATE

Every collaborator is passed in through the constructor; build_pipeline()
wires the production set from settings. All batch state lives in the state
store, so any process holding a pipeline can continue a batch that another
process started.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing.calculator import calculate, compare_treatments
from app.billing.drafts import DraftBuilder
from app.billing.folio import FolioAllocator
from app.config import Settings, settings
from app.errors import AllocationError, BatchNotFoundError, InvalidTransitionError, ValidationError
from app.extraction.base import FieldExtractor
from app.extraction.pdf_text import PdfTextExtractor
from app.integrations.directory import CustomerDirectory
from app.integrations.provider import ProviderClient
from app.integrations.sources import SourceFetcher
from app.models.enums import (
    BatchStatus,
    ItemStatus,
    PriorityTier,
    RenditionFormat,
    SubmissionResult,
    TaxTreatment,
)
from app.observability.logging import bind_batch_context
from app.observability.metrics import batches_finished_total
from app.pipeline.aggregator import summarize
from app.pipeline.analysis import AnalysisPool
from app.pipeline.ingestion import BatchIngestor
from app.pipeline.state_machine import transition_guard, transition_partial
from app.pipeline.submission import SubmissionQueue
from app.schemas.batches import (
    BatchDocument,
    BatchItem,
    BatchJob,
    BatchPreview,
    BatchSummary,
    ItemPreview,
    SingleInvoiceRequest,
    SingleInvoiceResponse,
)
from app.schemas.invoices import QueuedSubmission, SubmissionOutcome
from app.state.store import BatchStateStore
from app.storage.artifact_store import ArtifactStore
from app.storage.packager import ArchiveResult, ArtifactPackager

logger = structlog.get_logger(__name__)


class InvoicePipeline:
    """
    Batch invoicing pipeline.
    Holds no batch state of its own; everything goes through the state store.
    """

    def __init__(
        self,
        store: BatchStateStore,
        ingestor: BatchIngestor,
        analysis: AnalysisPool,
        allocator: FolioAllocator,
        drafts: DraftBuilder,
        directory: CustomerDirectory,
        queue: SubmissionQueue,
        packager: ArtifactPackager,
        artifact_store: ArtifactStore,
        series: str = "A",
        retention_seconds: int = 3600,
    ):
        self.store = store
        self.ingestor = ingestor
        self.analysis = analysis
        self.allocator = allocator
        self.drafts = drafts
        self.directory = directory
        self.queue = queue
        self.packager = packager
        self.artifact_store = artifact_store
        self.series = series
        self.retention_seconds = retention_seconds
        self.closers: list = []

    # ── Ingestion ────────────────────────────────────────────

    async def create_batch(
        self,
        tenant_id: str,
        owner_id: str,
        documents: list[BatchDocument],
        batch_id: Optional[str] = None,
    ) -> BatchJob:
        return await self.ingestor.create_batch(tenant_id, owner_id, documents, batch_id)

    async def collect(self, owner_id: str, group_id: str, document: BatchDocument) -> int:
        return await self.ingestor.collect(owner_id, group_id, document)

    async def flush_collector(self, tenant_id: str, owner_id: str, group_id: str) -> BatchJob:
        documents = await self.ingestor.flush(owner_id, group_id)
        try:
            return await self.create_batch(tenant_id, owner_id, documents, batch_id=group_id)
        except ValidationError:
            for doc in documents:
                self.artifact_store.delete(doc.source_uri)
            raise

    # ── Reads ────────────────────────────────────────────────

    async def get_batch(self, owner_id: str, batch_id: str) -> BatchJob:
        record = await self.store.get(owner_id, batch_id)
        if record is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        return self._to_batch(record)

    async def preview(self, owner_id: str, batch_id: str) -> BatchPreview:
        """Both treatments per analyzed item, plus batch totals for each."""
        batch = await self.get_batch(owner_id, batch_id)
        items = []
        lines = []
        for item in batch.items_with_status(ItemStatus.ANALYZED):
            fields = item.extracted_fields
            preview = batch.previews.get(item.id) or self.drafts.preview(item)
            items.append(ItemPreview(
                item_id=item.id,
                source_name=item.source_name,
                customer_name=item.customer_name,
                order_ref=fields.order_ref,
                amount=fields.amount,
                warnings=item.warnings,
                preview=preview,
            ))
            lines.extend(self.drafts.build_lines(fields.order_ref, fields.amount, include_withholding=True))

        return BatchPreview(
            batch_id=batch.id,
            status=batch.status,
            items=items,
            totals=compare_treatments(lines) if lines else {},
        )

    async def summary(self, owner_id: str, batch_id: str) -> BatchSummary:
        return summarize(await self.get_batch(owner_id, batch_id))

    # ── Stages ───────────────────────────────────────────────

    async def run_analysis(self, owner_id: str, batch_id: str) -> BatchJob:
        batch = await self.get_batch(owner_id, batch_id)
        if batch.status is not BatchStatus.ANALYZING:
            logger.info("analysis_skipped", batch_id=batch_id, status=batch.status.value)
            return batch

        batch = await self.analysis.run(batch)
        if batch.status is BatchStatus.FAILED:
            await self._retain(batch)
        return batch

    async def confirm(self, owner_id: str, batch_id: str, treatment: TaxTreatment) -> BatchSummary:
        """
        Allocate a folio for every analyzed item (in position order), queue
        the drafts and wait for all outcomes.
        """
        record = await self.store.update(
            owner_id,
            batch_id,
            transition_partial(BatchStatus.SUBMITTING, selected_treatment=treatment.value),
            precondition=transition_guard(BatchStatus.SUBMITTING),
        )
        batch = self._to_batch(record)
        bind_batch_context(batch.id, owner_id)
        analyzed = batch.items_with_status(ItemStatus.ANALYZED)
        logger.info("batch_confirmed", treatment=treatment.value, items=len(analyzed))

        futures = await self._queue_items(batch, treatment, analyzed)
        outcomes: list[SubmissionOutcome] = list(await asyncio.gather(*futures))
        return await self._finish_submission(owner_id, batch_id, outcomes)

    async def resume_submission(self, owner_id: str, batch_id: str) -> BatchSummary:
        """
        Continue a batch left in `submitting` by a worker that went away.

        Queued items are sent again with the folio already stored on them; the
        allocator is only called for items that never received one. A batch
        in any other status, or one this process is still submitting, is
        returned untouched.
        """
        batch = await self.get_batch(owner_id, batch_id)
        if batch.status is not BatchStatus.SUBMITTING:
            logger.info("resume_skipped", batch_id=batch_id, status=batch.status.value)
            return summarize(batch)

        pending = batch.items_with_status(ItemStatus.QUEUED, ItemStatus.ANALYZED)
        if any(self.queue.is_tracking(_submission_id(batch_id, item.id)) for item in pending):
            logger.info("resume_skipped", batch_id=batch_id, status=batch.status.value, reason="in_flight")
            return summarize(batch)

        bind_batch_context(batch.id, owner_id)
        logger.info(
            "batch_submission_resumed",
            queued=sum(1 for item in pending if item.status is ItemStatus.QUEUED),
            unallocated=sum(1 for item in pending if item.status is ItemStatus.ANALYZED),
        )
        treatment = batch.selected_treatment or TaxTreatment.WITHHOLDING
        futures = await self._queue_items(batch, treatment, pending)
        outcomes: list[SubmissionOutcome] = list(await asyncio.gather(*futures))
        return await self._finish_submission(owner_id, batch_id, outcomes)

    async def cancel(self, owner_id: str, batch_id: str) -> BatchJob:
        """Stop a batch. Invoices already stamped stay stamped."""
        record = await self.store.update(
            owner_id,
            batch_id,
            transition_partial(BatchStatus.CANCELED),
            precondition=transition_guard(BatchStatus.CANCELED),
        )
        batch = self._to_batch(record)
        logger.info("batch_canceled", batch_id=batch_id, owner_id=owner_id)
        await self._retain(batch)
        return batch

    async def build_archive(
        self, owner_id: str, batch_id: str, fmt: RenditionFormat
    ) -> ArchiveResult:
        batch = await self.get_batch(owner_id, batch_id)
        return await self.packager.build_archive(batch, fmt)

    async def submit_single(
        self, tenant_id: str, owner_id: str, request: SingleInvoiceRequest
    ) -> SingleInvoiceResponse:
        """Interactive one-off invoice. Dispatched ahead of any batch work."""
        customer = await self.directory.resolve(tenant_id, request.customer_ref)
        if customer is None:
            raise ValidationError([f"customer {request.customer_ref!r} not found"])

        folio = await self.allocator.allocate(tenant_id, self.series)
        draft = self.drafts.build_draft(
            tenant_id=tenant_id,
            customer_id=customer.customer_id,
            customer_name=customer.legal_name,
            order_ref=request.order_ref,
            amount=request.amount,
            treatment=request.treatment,
            series=self.series,
            folio=folio,
        )
        outcome: SubmissionOutcome = await self.queue.enqueue(
            QueuedSubmission(
                submission_id=f"single_{uuid.uuid4().hex[:12]}",
                draft=draft,
                owner_id=owner_id,
            ),
            priority=PriorityTier.INTERACTIVE,
        )
        return SingleInvoiceResponse(
            result=outcome.result.value,
            folio=folio,
            series=self.series,
            invoice_ref=outcome.invoice.provider_invoice_id if outcome.invoice else None,
            error=outcome.error,
            totals=calculate(draft.lines, withholding_eligible=draft.withholding),
        )

    async def close(self) -> None:
        await self.queue.close()
        for closer in self.closers:
            await closer()

    # ── Internals ────────────────────────────────────────────

    async def _finish_submission(
        self, owner_id: str, batch_id: str, outcomes: list[SubmissionOutcome]
    ) -> BatchSummary:
        succeeded = sum(1 for o in outcomes if o.result is SubmissionResult.SUBMITTED)
        target = BatchStatus.COMPLETED if succeeded else BatchStatus.FAILED
        try:
            record = await self.store.update(
                owner_id,
                batch_id,
                transition_partial(target),
                precondition=transition_guard(target),
            )
            batch = self._to_batch(record)
            await self._retain(batch)
        except InvalidTransitionError:
            # Canceled mid-flight; cancel() already applied retention.
            batch = await self._close_canceled(owner_id, batch_id)

        logger.info(
            "batch_submission_complete",
            status=batch.status.value,
            succeeded=succeeded,
            failed=len(outcomes) - succeeded,
            queue=self.queue.stats(),
        )
        return summarize(batch)

    async def _queue_items(
        self, batch: BatchJob, treatment: TaxTreatment, items: list[BatchItem]
    ) -> list[asyncio.Future]:
        """Hand each item to the submission queue, allocating a folio where it has none."""
        owner_id, batch_id = batch.owner_id, batch.id
        futures: list[asyncio.Future] = []
        for item in items:
            if await self._is_canceled(owner_id, batch_id):
                logger.info("confirmation_interrupted", queued=len(futures))
                break

            folio = item.folio if item.status is ItemStatus.QUEUED else None
            if folio is None:
                try:
                    folio = await self.allocator.allocate(batch.tenant_id, batch.series)
                except AllocationError as e:
                    await self._update_item(
                        owner_id, batch_id, item.id,
                        status=ItemStatus.SUBMIT_FAILED.value,
                        error=f"folio allocation failed: {e.message}",
                    )
                    continue
                await self._update_item(
                    owner_id, batch_id, item.id, status=ItemStatus.QUEUED.value, folio=folio
                )

            draft = self.drafts.draft_for_item(batch.tenant_id, item, treatment, batch.series, folio)
            futures.append(self.queue.enqueue(
                QueuedSubmission(
                    submission_id=_submission_id(batch_id, item.id),
                    draft=draft,
                    owner_id=owner_id,
                    batch_id=batch_id,
                    item_id=item.id,
                ),
                priority=PriorityTier.BATCH,
            ))
        return futures

    async def _close_canceled(self, owner_id: str, batch_id: str) -> BatchJob:
        """Items of a canceled batch that never reached the provider become submit_failed."""
        batch = await self.get_batch(owner_id, batch_id)
        leftover = batch.items_with_status(ItemStatus.ANALYZED, ItemStatus.QUEUED)
        if leftover:
            record = await self.store.update(owner_id, batch_id, {
                "items": {
                    item.id: {"status": ItemStatus.SUBMIT_FAILED.value, "error": "batch canceled"}
                    for item in leftover
                },
            })
            batch = self._to_batch(record)
        return batch

    async def _is_canceled(self, owner_id: str, batch_id: str) -> bool:
        record = await self.store.get(owner_id, batch_id)
        return record is None or record.get("status") == BatchStatus.CANCELED.value

    async def _update_item(self, owner_id: str, batch_id: str, item_id: str, **fields) -> None:
        await self.store.update(owner_id, batch_id, {"items": {item_id: fields}})

    async def _retain(self, batch: BatchJob) -> None:
        """Terminal batches are kept only for the retention window."""
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.retention_seconds)
        await self.store.update(batch.owner_id, batch.id, {"expires_at": expires_at.isoformat()})
        await self.store.expire(batch.owner_id, batch.id, self.retention_seconds)
        batches_finished_total.labels(status=batch.status.value).inc()

    def _to_batch(self, record: dict) -> BatchJob:
        return BatchJob.model_validate(record).model_copy(update={"degraded": self.store.degraded})


def _submission_id(batch_id: str, item_id: str) -> str:
    return f"{batch_id}:{item_id}"

def build_pipeline(
    config: Settings = settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    redis: Optional[Redis] = None,
    provider: Optional[ProviderClient] = None,
    extractor: Optional[FieldExtractor] = None,
    artifact_store: Optional[ArtifactStore] = None,
) -> InvoicePipeline:
    """Wire the production pipeline. Every argument can be overridden."""
    owns_redis = redis is None
    if redis is None:
        redis = Redis.from_url(
            config.REDIS_URL,
            socket_timeout=config.REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=config.REDIS_SOCKET_TIMEOUT_SECONDS,
        )
    if session_factory is None:
        from app.models.database import async_session_factory
        session_factory = async_session_factory

    owns_provider = provider is None
    provider = provider or ProviderClient(
        base_url=config.PROVIDER_BASE_URL,
        api_key=config.PROVIDER_API_KEY,
        timeout=config.PROVIDER_TIMEOUT_SECONDS,
        rendition_timeout=config.RENDITION_TIMEOUT_SECONDS,
    )
    artifact_store = artifact_store or ArtifactStore(root=config.ARTIFACT_ROOT)
    extractor = extractor or PdfTextExtractor(config.EXTRACTOR_CUSTOMER_PATTERNS)

    store = BatchStateStore(
        redis,
        prefix=config.STATE_KEY_PREFIX,
        default_ttl=config.BATCH_TTL_SECONDS,
        max_update_retries=config.STATE_UPDATE_MAX_RETRIES,
    )
    collector_store = BatchStateStore(
        redis,
        prefix=f"{config.STATE_KEY_PREFIX}-collector",
        default_ttl=config.COLLECTOR_TTL_SECONDS,
        max_update_retries=config.STATE_UPDATE_MAX_RETRIES,
    )
    drafts = DraftBuilder(config)
    directory = CustomerDirectory(session_factory)

    pipeline = InvoicePipeline(
        store=store,
        ingestor=BatchIngestor(store, collector_store, config),
        analysis=AnalysisPool(
            store=store,
            fetcher=SourceFetcher(artifact_store, timeout=config.DOWNLOAD_TIMEOUT_SECONDS),
            extractor=extractor,
            directory=directory,
            drafts=drafts,
            artifact_store=artifact_store,
            max_fanout=config.ANALYSIS_MAX_FANOUT,
            item_timeout=config.ANALYSIS_ITEM_TIMEOUT_SECONDS,
            min_confidence=config.ANALYSIS_MIN_CONFIDENCE,
            review_confidence=config.ANALYSIS_REVIEW_CONFIDENCE,
        ),
        allocator=FolioAllocator(session_factory, start=config.FOLIO_START),
        drafts=drafts,
        directory=directory,
        queue=SubmissionQueue(
            provider,
            store=store,
            max_in_flight=config.PROVIDER_MAX_IN_FLIGHT,
            max_attempts=config.PROVIDER_MAX_ATTEMPTS,
            retry_base_seconds=config.PROVIDER_RETRY_BASE_SECONDS,
            retry_max_seconds=config.PROVIDER_RETRY_MAX_SECONDS,
        ),
        packager=ArtifactPackager(
            provider,
            artifact_store,
            fetch_timeout=config.RENDITION_TIMEOUT_SECONDS,
            max_concurrent_fetches=config.PROVIDER_MAX_IN_FLIGHT,
            grace_seconds=config.ARTIFACT_GRACE_SECONDS,
        ),
        artifact_store=artifact_store,
        series=config.FOLIO_SERIES,
        retention_seconds=config.BATCH_RETENTION_SECONDS,
    )
    if owns_provider:
        pipeline.closers.append(provider.close)
    if owns_redis:
        pipeline.closers.append(redis.aclose)
    return pipeline
