"""
/api/v1/batches endpoints.
Handles batch upload, the upload collector, preview, confirmation,
cancellation, summaries and artifact downloads.
"""

import time
import uuid
from typing import Optional

import structlog
from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    UploadFile,
    status,
)
from fastapi.responses import FileResponse
from redis.exceptions import RedisError

from app.config import settings
from app.dependencies import (
    Principal,
    get_artifact_store,
    get_pipeline,
    get_principal,
    verify_api_key,
)
from app.errors import InvalidTransitionError, ValidationError
from app.models.enums import BatchStatus, ItemStatus, RenditionFormat, TaxTreatment
from app.pipeline.ingestion import generate_batch_id
from app.pipeline.orchestrator import InvoicePipeline
from app.pipeline.state_machine import check_transition
from app.schemas.batches import (
    BatchCreatedResponse,
    BatchDocument,
    BatchJob,
    BatchPreview,
    BatchSummary,
    CollectResponse,
    ConfirmAcceptedResponse,
    ConfirmRequest,
)
from app.storage.artifact_store import ArtifactStore
from app.storage.paths import upload_path
from app.worker import jobs

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/batches", tags=["batches"], dependencies=[Depends(verify_api_key)])


async def _store_upload(
    store: ArtifactStore, owner_id: str, group_id: str, file: UploadFile, prefix: str
) -> BatchDocument:
    data = await file.read()
    name = file.filename or "document.pdf"
    path = store.save_bytes(upload_path(owner_id, group_id, f"{prefix}_{name}"), data)
    return BatchDocument(
        name=name,
        content_type=file.content_type,
        size_bytes=len(data),
        source_uri=path,
    )


def _dispatch_analysis(background: BackgroundTasks, pipeline: InvoicePipeline, batch: BatchJob) -> None:
    if not settings.RUN_JOBS_INLINE:
        try:
            jobs.enqueue_analysis(batch.owner_id, batch.id)
            return
        except RedisError as e:
            logger.warning("job_enqueue_failed_running_inline", batch_id=batch.id, error=str(e))
    background.add_task(pipeline.run_analysis, batch.owner_id, batch.id)


def _created(batch: BatchJob) -> BatchCreatedResponse:
    return BatchCreatedResponse(
        batch_id=batch.id,
        status=batch.status,
        item_count=len(batch.items),
        degraded=batch.degraded,
    )


@router.post("", response_model=BatchCreatedResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_batch(
    background: BackgroundTasks,
    files: list[UploadFile] = File(...),
    group_id: Optional[str] = Form(None),
    principal: Principal = Depends(get_principal),
    pipeline: InvoicePipeline = Depends(get_pipeline),
    store: ArtifactStore = Depends(get_artifact_store),
):
    """Upload a group of PDFs as one batch. Analysis starts in the background."""
    batch_id = generate_batch_id(principal.owner_id, group_id)
    # Per-request file names: a rejected request removes only its own uploads.
    upload_token = uuid.uuid4().hex[:8]
    documents = [
        await _store_upload(store, principal.owner_id, batch_id, f, f"{upload_token}_{i:02d}")
        for i, f in enumerate(files)
    ]
    try:
        batch = await pipeline.create_batch(
            principal.tenant_id, principal.owner_id, documents, batch_id=batch_id
        )
    except ValidationError:
        for doc in documents:
            store.delete(doc.source_uri)
        raise

    _dispatch_analysis(background, pipeline, batch)
    return _created(batch)


@router.post("/collect/{group_id}", response_model=CollectResponse)
async def collect_document(
    group_id: str,
    file: UploadFile = File(...),
    principal: Principal = Depends(get_principal),
    pipeline: InvoicePipeline = Depends(get_pipeline),
    store: ArtifactStore = Depends(get_artifact_store),
):
    """Buffer one document of an upload group that arrives file by file."""
    document = await _store_upload(store, principal.owner_id, group_id, file, str(time.time_ns()))
    collected = await pipeline.collect(principal.owner_id, group_id, document)
    return CollectResponse(group_id=group_id, collected=collected)


@router.post(
    "/collect/{group_id}/done",
    response_model=BatchCreatedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def close_collection(
    group_id: str,
    background: BackgroundTasks,
    principal: Principal = Depends(get_principal),
    pipeline: InvoicePipeline = Depends(get_pipeline),
):
    """Turn everything collected for the group into a batch. Rejected uploads are removed."""
    batch = await pipeline.flush_collector(principal.tenant_id, principal.owner_id, group_id)
    _dispatch_analysis(background, pipeline, batch)
    return _created(batch)


@router.get("/{batch_id}", response_model=BatchJob)
async def get_batch(
    batch_id: str,
    principal: Principal = Depends(get_principal),
    pipeline: InvoicePipeline = Depends(get_pipeline),
):
    return await pipeline.get_batch(principal.owner_id, batch_id)


@router.get("/{batch_id}/preview", response_model=BatchPreview)
async def preview_batch(
    batch_id: str,
    principal: Principal = Depends(get_principal),
    pipeline: InvoicePipeline = Depends(get_pipeline),
):
    """Totals under both tax treatments, per item and for the whole batch."""
    return await pipeline.preview(principal.owner_id, batch_id)


@router.post(
    "/{batch_id}/confirm",
    response_model=ConfirmAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def confirm_batch(
    batch_id: str,
    body: ConfirmRequest,
    background: BackgroundTasks,
    principal: Principal = Depends(get_principal),
    pipeline: InvoicePipeline = Depends(get_pipeline),
):
    """Choose the tax treatment. Folio allocation and submission run in the background."""
    batch = await pipeline.get_batch(principal.owner_id, batch_id)
    check_transition(batch.status, BatchStatus.SUBMITTING)
    eligible = len(batch.items_with_status(ItemStatus.ANALYZED))

    queued = False
    if not settings.RUN_JOBS_INLINE:
        try:
            jobs.enqueue_confirmation(principal.owner_id, batch_id, body.treatment)
            queued = True
        except RedisError as e:
            logger.warning("job_enqueue_failed_running_inline", batch_id=batch_id, error=str(e))
    if not queued:
        background.add_task(pipeline.confirm, principal.owner_id, batch_id, body.treatment)

    return ConfirmAcceptedResponse(batch_id=batch_id, treatment=body.treatment, items=eligible)


@router.post(
    "/{batch_id}/resume",
    response_model=ConfirmAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def resume_batch(
    batch_id: str,
    background: BackgroundTasks,
    principal: Principal = Depends(get_principal),
    pipeline: InvoicePipeline = Depends(get_pipeline),
):
    """Re-send the unfinished items of a batch whose submission worker stopped."""
    batch = await pipeline.get_batch(principal.owner_id, batch_id)
    if batch.status is not BatchStatus.SUBMITTING:
        raise InvalidTransitionError(batch.status.value, BatchStatus.SUBMITTING.value)
    pending = len(batch.items_with_status(ItemStatus.QUEUED, ItemStatus.ANALYZED))

    queued = False
    if not settings.RUN_JOBS_INLINE:
        try:
            jobs.enqueue_resume(principal.owner_id, batch_id)
            queued = True
        except RedisError as e:
            logger.warning("job_enqueue_failed_running_inline", batch_id=batch_id, error=str(e))
    if not queued:
        background.add_task(pipeline.resume_submission, principal.owner_id, batch_id)

    return ConfirmAcceptedResponse(
        batch_id=batch_id,
        treatment=batch.selected_treatment or TaxTreatment.WITHHOLDING,
        items=pending,
    )


@router.post("/{batch_id}/cancel", response_model=BatchJob)
async def cancel_batch(
    batch_id: str,
    principal: Principal = Depends(get_principal),
    pipeline: InvoicePipeline = Depends(get_pipeline),
):
    """Stop a batch. Invoices already stamped are not reversed."""
    return await pipeline.cancel(principal.owner_id, batch_id)


@router.get("/{batch_id}/summary", response_model=BatchSummary)
async def batch_summary(
    batch_id: str,
    principal: Principal = Depends(get_principal),
    pipeline: InvoicePipeline = Depends(get_pipeline),
):
    return await pipeline.summary(principal.owner_id, batch_id)


@router.get("/{batch_id}/artifacts")
async def download_artifacts(
    batch_id: str,
    background: BackgroundTasks,
    format: RenditionFormat = Query(RenditionFormat.PDF),
    principal: Principal = Depends(get_principal),
    pipeline: InvoicePipeline = Depends(get_pipeline),
    store: ArtifactStore = Depends(get_artifact_store),
):
    """Zip of the PDF or XML renditions of every stamped invoice in the batch."""
    result = await pipeline.build_archive(principal.owner_id, batch_id, format)
    if result.path is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "message": "No renditions available for this batch",
                "failures": [{"item_id": f.item_id, "error": f.message} for f in result.failures],
            },
        )

    background.add_task(pipeline.packager.discard, result.path)
    return FileResponse(
        store.full_path(result.path),
        media_type="application/zip",
        filename=f"{batch_id}_{format.value}.zip",
        headers={
            "X-Included-Items": str(len(result.included)),
            "X-Failed-Items": str(len(result.failures)),
        },
    )

