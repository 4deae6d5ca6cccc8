"""
Artifact packager: zips the provider renditions of a batch's stamped invoices.

Renditions are fetched concurrently with a per-fetch timeout. A fetch that
fails is recorded as a PackagingError and left out of the archive; the rest
of the archive is still produced. Archives are ephemeral: the API discards
them once delivered and purge_stale() sweeps anything left behind.
"""

import asyncio
import zipfile
from dataclasses import dataclass, field
from typing import Optional

import structlog

from app.errors import PackagingError, ProviderError
from app.integrations.provider import ProviderClient
from app.models.enums import ItemStatus, RenditionFormat
from app.observability.metrics import renditions_failed_total
from app.schemas.batches import BatchItem, BatchJob
from app.storage.artifact_store import ArtifactStore
from app.storage.paths import archive_member_name, archive_path

logger = structlog.get_logger(__name__)

STALE_PREFIXES = ("archives", "uploads", "sources")


@dataclass
class ArchiveResult:
    path: Optional[str]
    included: list[str] = field(default_factory=list)
    failures: list[PackagingError] = field(default_factory=list)


class ArtifactPackager:
    def __init__(
        self,
        provider: Optional[ProviderClient],
        artifact_store: ArtifactStore,
        fetch_timeout: float = 30.0,
        max_concurrent_fetches: int = 5,
        grace_seconds: int = 30 * 60,
    ):
        self.provider = provider
        self.artifact_store = artifact_store
        self.fetch_timeout = fetch_timeout
        self.max_concurrent_fetches = max_concurrent_fetches
        self.grace_seconds = grace_seconds

    async def build_archive(self, batch: BatchJob, fmt: RenditionFormat) -> ArchiveResult:
        """
        Fetch renditions concurrently and write each one into the zip on disk
        as soon as it arrives, so the archive is never assembled in memory.
        """
        items = [
            item for item in batch.items_with_status(ItemStatus.SUBMITTED)
            if item.invoice_ref
        ]
        semaphore = asyncio.Semaphore(self.max_concurrent_fetches)

        async def fetch(item: BatchItem) -> tuple[BatchItem, object]:
            async with semaphore:
                try:
                    content = await asyncio.wait_for(
                        self.provider.fetch_rendition(item.invoice_ref, fmt), self.fetch_timeout
                    )
                except (ProviderError, asyncio.TimeoutError) as e:
                    return item, e
                return item, content

        result = ArchiveResult(path=None)
        relative_path = archive_path(batch.owner_id, batch.id, fmt.value)
        tasks = [asyncio.ensure_future(fetch(item)) for item in items]
        zf: Optional[zipfile.ZipFile] = None
        try:
            for next_done in asyncio.as_completed(tasks):
                item, content = await next_done
                if isinstance(content, (ProviderError, asyncio.TimeoutError)):
                    message = (
                        f"rendition fetch timed out after {self.fetch_timeout:g}s"
                        if isinstance(content, asyncio.TimeoutError)
                        else content.message
                    )
                    renditions_failed_total.labels(format=fmt.value).inc()
                    result.failures.append(PackagingError(item.id, message))
                    logger.warning("rendition_fetch_failed", item_id=item.id, error=message)
                    continue

                if zf is None:
                    zf = zipfile.ZipFile(
                        self.artifact_store.writable_path(relative_path),
                        "w",
                        compression=zipfile.ZIP_DEFLATED,
                    )
                extracted = item.extracted_fields
                name = archive_member_name(
                    batch.series,
                    item.folio,
                    extracted.order_ref if extracted else None,
                    item.customer_name,
                    fmt.value,
                )
                zf.writestr(name, content)
                result.included.append(item.id)
        except BaseException:
            for task in tasks:
                task.cancel()
            if zf is not None:
                zf.close()
                self.discard(relative_path)
            raise

        if zf is None:
            logger.info("archive_empty", batch_id=batch.id, failures=len(result.failures))
            return result

        zf.close()
        # Fetches complete in any order; report items by position.
        order = {item.id: n for n, item in enumerate(items)}
        result.included.sort(key=order.__getitem__)
        result.failures.sort(key=lambda failure: order[failure.item_id])
        result.path = relative_path
        logger.info(
            "archive_built",
            batch_id=batch.id,
            format=fmt.value,
            included=len(result.included),
            failures=len(result.failures),
            path=result.path,
        )
        return result

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, content in members:
                zf.writestr(name, content)

        result.path = self.artifact_store.save_bytes(
            archive_path(batch.owner_id, batch.id, fmt.value), buffer.getvalue()
        )
        logger.info(
            "archive_built",
            batch_id=batch.id,
            format=fmt.value,
            included=len(result.included),
            failures=len(result.failures),
            path=result.path,
        )
        return result

    def discard(self, path: str) -> None:
        """Delete a delivered archive. Errors are logged, never raised."""
        try:
            self.artifact_store.delete(path)
        except (OSError, ValueError) as e:
            logger.warning("archive_cleanup_failed", path=path, error=str(e))

    def purge_stale(self, max_age_seconds: Optional[float] = None) -> int:
        """Remove archives and abandoned uploads older than the grace period."""
        max_age = self.grace_seconds if max_age_seconds is None else max_age_seconds
        removed = 0
        for prefix in STALE_PREFIXES:
            for path in self.artifact_store.list_older_than(prefix, max_age):
                try:
                    if self.artifact_store.delete(path):
                        removed += 1
                except (OSError, ValueError) as e:
                    logger.warning("stale_artifact_cleanup_failed", path=path, error=str(e))
        if removed:
            logger.info("stale_artifacts_purged", count=removed, max_age_seconds=max_age)
        return removed
