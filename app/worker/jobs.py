"""
RQ job functions for the invoicing pipeline.
These are the entry points that the worker calls. Each job builds its own
pipeline, because batch state lives in Redis and any worker can pick up any
stage of any batch.
"""

import asyncio

import structlog
from redis import Redis
from rq import Queue

from app.config import settings
from app.models.enums import TaxTreatment
from app.observability.logging import bind_batch_context, clear_batch_context
from app.pipeline.orchestrator import build_pipeline
from app.schemas.batches import BatchSummary
from app.storage.artifact_store import ArtifactStore
from app.storage.packager import ArtifactPackager

logger = structlog.get_logger(__name__)


def get_queue() -> Queue:
    """Get the pipeline job queue."""
    conn = Redis.from_url(
        settings.REDIS_URL,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
    )
    return Queue(settings.QUEUE_NAME, connection=conn)


def _enqueue(func, *args, description: str) -> str:
    q = get_queue()
    job = q.enqueue(
        func,
        *args,
        job_timeout=settings.JOB_TIMEOUT_SECONDS,
        result_ttl=86400,  # Keep results for 24 hours
        failure_ttl=604800,  # Keep failures for 7 days
        description=description,
    )
    logger.info("job_enqueued", job_id=job.id, job=func.__name__, args=list(args))
    return job.id


def enqueue_analysis(owner_id: str, batch_id: str) -> str:
    return _enqueue(analyze_batch_job, owner_id, batch_id, description=f"analyze {batch_id}")


def enqueue_confirmation(owner_id: str, batch_id: str, treatment: TaxTreatment) -> str:
    return _enqueue(
        confirm_batch_job, owner_id, batch_id, treatment.value, description=f"confirm {batch_id}"
    )


def enqueue_resume(owner_id: str, batch_id: str) -> str:
    return _enqueue(resume_batch_job, owner_id, batch_id, description=f"resume {batch_id}")


def enqueue_purge() -> str:
    return _enqueue(purge_artifacts_job, description="purge stale artifacts")


# ── Jobs ─────────────────────────────────────────────────────

def analyze_batch_job(owner_id: str, batch_id: str) -> dict:
    """Download and extract every item of a batch."""
    return _run_job("analyze", owner_id, batch_id, _analyze(owner_id, batch_id))


def confirm_batch_job(owner_id: str, batch_id: str, treatment: str) -> dict:
    """Allocate folios and submit every analyzed item of a batch."""
    return _run_job(
        "confirm", owner_id, batch_id, _confirm(owner_id, batch_id, TaxTreatment(treatment))
    )


def resume_batch_job(owner_id: str, batch_id: str) -> dict:
    """Finish submitting a batch whose confirm job died part way."""
    return _run_job("resume", owner_id, batch_id, _resume(owner_id, batch_id))


def purge_artifacts_job() -> dict:
    """Delete archives and abandoned uploads older than the grace period."""
    packager = ArtifactPackager(
        provider=None,
        artifact_store=ArtifactStore(root=settings.ARTIFACT_ROOT),
        grace_seconds=settings.ARTIFACT_GRACE_SECONDS,
    )
    removed = packager.purge_stale()
    logger.info("job_completed", job="purge", removed=removed)
    return {"removed": removed}


def _run_job(name: str, owner_id: str, batch_id: str, coro) -> dict:
    bind_batch_context(batch_id, owner_id, job=name)
    logger.info("job_started")
    try:
        result = asyncio.run(coro)
        logger.info("job_completed", status=result.get("status"))
        return result
    except Exception as e:
        logger.error("job_failed", error=str(e))
        raise
    finally:
        clear_batch_context()


async def _analyze(owner_id: str, batch_id: str) -> dict:
    pipeline = build_pipeline()
    try:
        batch = await pipeline.run_analysis(owner_id, batch_id)
    finally:
        await pipeline.close()
    return {"batch_id": batch.id, "status": batch.status.value}


async def _confirm(owner_id: str, batch_id: str, treatment: TaxTreatment) -> dict:
    pipeline = build_pipeline()
    try:
        summary = await pipeline.confirm(owner_id, batch_id, treatment)
    finally:
        await pipeline.close()
    return _summary_result(summary)


async def _resume(owner_id: str, batch_id: str) -> dict:
    pipeline = build_pipeline()
    try:
        summary = await pipeline.resume_submission(owner_id, batch_id)
    finally:
        await pipeline.close()
    return _summary_result(summary)


def _summary_result(summary: BatchSummary) -> dict:
    return {
        "batch_id": summary.batch_id,
        "status": summary.status.value,
        "succeeded": len(summary.succeeded),
        "failed": len(summary.failed),
    }
