"""
Tests for artifact packaging and the artifact store.
"""

import asyncio
import os
import time
import zipfile
from datetime import datetime, timedelta, timezone

import pytest

from app.models.enums import BatchStatus, ItemStatus, RenditionFormat
from app.schemas.batches import BatchItem, BatchJob, ExtractedFields
from app.storage.artifact_store import ArtifactStore
from app.storage.packager import ArtifactPackager
from app.storage.paths import archive_member_name, safe_file_name


def completed_batch(count: int = 3) -> BatchJob:
    now = datetime.now(timezone.utc)
    items = {
        f"it{i}": BatchItem(
            id=f"it{i}",
            position=i,
            source_name=f"{i}.pdf",
            source_uri=f"uploads/{i}.pdf",
            status=ItemStatus.SUBMITTED,
            extracted_fields=ExtractedFields(order_ref=f"450000000{i}", confidence=100),
            customer_name="PROTECCION S.O.S. JURIDICO",
            folio=800 + i,
            invoice_ref=f"inv_A{800 + i}",
        )
        for i in range(count)
    }
    items["failed"] = BatchItem(
        id="failed",
        position=count,
        source_name="bad.pdf",
        source_uri="uploads/bad.pdf",
        status=ItemStatus.ANALYSIS_FAILED,
    )
    return BatchJob(
        id="group-1",
        tenant_id="tenant-1",
        owner_id="chat-42",
        status=BatchStatus.COMPLETED,
        items=items,
        created_at=now,
        expires_at=now + timedelta(hours=1),
    )


class TestPaths:

    def test_member_name(self):
        name = archive_member_name("A", 800, "4500000001", "PROTECCION S.O.S. JURIDICO", "pdf")
        assert name == "A800_4500000001_PROTECCION_S.O.S._JU.pdf"

    def test_member_name_defaults(self):
        assert archive_member_name("A", 801, None, None, "xml") == "A801_SIN_PEDIDO_CLIENTE.xml"

    def test_safe_file_name_strips_accents(self):
        assert safe_file_name("Asesoría Jurídica/Ñ") == "Asesoria_Juridica_N"


class TestArtifactStore:

    def test_save_load_delete(self, artifact_store):
        artifact_store.save_bytes("uploads/a/b.pdf", b"data")
        assert artifact_store.load_bytes("uploads/a/b.pdf") == b"data"
        assert artifact_store.delete("uploads/a/b.pdf") is True
        assert artifact_store.exists("uploads/a/b.pdf") is False

    def test_path_escape_rejected(self, artifact_store):
        with pytest.raises(ValueError):
            artifact_store.load_bytes("../outside.txt")
        with pytest.raises(ValueError):
            artifact_store.save_bytes("../../outside.txt", b"x")

    def test_delete_tree(self, artifact_store):
        artifact_store.save_bytes("sources/o/b/1.pdf", b"1")
        artifact_store.save_bytes("sources/o/b/2.pdf", b"2")
        assert artifact_store.delete_tree("sources/o/b") == 2
        assert artifact_store.delete_tree("sources/o/b") == 0


@pytest.mark.asyncio
class TestArtifactPackager:

    async def test_archive_contains_every_rendition(self, fake_provider, artifact_store):
        packager = ArtifactPackager(fake_provider, artifact_store)
        result = await packager.build_archive(completed_batch(), RenditionFormat.PDF)

        assert result.included == ["it0", "it1", "it2"]
        assert result.failures == []
        with zipfile.ZipFile(artifact_store.full_path(result.path)) as zf:
            names = sorted(zf.namelist())
            assert names[0] == "A800_4500000000_PROTECCION_S.O.S._JU.pdf"
            assert len(names) == 3
            assert zf.read(names[0]) == b"pdf:inv_A800"

    async def test_failed_fetch_is_left_out(self, fake_provider, artifact_store):
        fake_provider.missing_renditions.add("inv_A801")
        packager = ArtifactPackager(fake_provider, artifact_store)
        result = await packager.build_archive(completed_batch(), RenditionFormat.XML)

        assert result.included == ["it0", "it2"]
        assert [f.item_id for f in result.failures] == ["it1"]
        with zipfile.ZipFile(artifact_store.full_path(result.path)) as zf:
            assert all(name.endswith(".xml") for name in zf.namelist())
            assert len(zf.namelist()) == 2

    async def test_fetch_timeout_recorded(self, fake_provider, artifact_store):
        async def slow_fetch(invoice_id, fmt):
            await asyncio.sleep(1)
            return b""

        fake_provider.fetch_rendition = slow_fetch
        packager = ArtifactPackager(fake_provider, artifact_store, fetch_timeout=0.05)
        result = await packager.build_archive(completed_batch(1), RenditionFormat.PDF)
        assert result.path is None
        assert result.failures[0].message == "rendition fetch timed out after 0.05s"

    async def test_unexpected_error_removes_partial_archive(self, fake_provider, artifact_store):
        real_fetch = fake_provider.fetch_rendition

        async def broken_last(invoice_id, fmt):
            if invoice_id == "inv_A802":
                await asyncio.sleep(0.01)
                raise RuntimeError("connection reset")
            return await real_fetch(invoice_id, fmt)

        fake_provider.fetch_rendition = broken_last
        packager = ArtifactPackager(fake_provider, artifact_store)
        with pytest.raises(RuntimeError):
            await packager.build_archive(completed_batch(), RenditionFormat.PDF)
        assert artifact_store.list_older_than("archives", -60) == []

    async def test_no_submitted_items(self, fake_provider, artifact_store):
        packager = ArtifactPackager(fake_provider, artifact_store)
        result = await packager.build_archive(completed_batch(0), RenditionFormat.PDF)
        assert result.path is None
        assert result.included == []

    async def test_discard(self, fake_provider, artifact_store):
        packager = ArtifactPackager(fake_provider, artifact_store)
        result = await packager.build_archive(completed_batch(1), RenditionFormat.PDF)
        packager.discard(result.path)
        assert not artifact_store.exists(result.path)


class TestPurgeStale:

    def test_removes_only_old_files(self, tmp_path):
        store = ArtifactStore(root=str(tmp_path))
        store.save_bytes("archives/o/old.zip", b"old")
        store.save_bytes("uploads/o/g/old.pdf", b"old")
        store.save_bytes("archives/o/new.zip", b"new")
        store.save_bytes("keep/other.txt", b"x")
        an_hour_ago = time.time() - 3600
        for path in ("archives/o/old.zip", "uploads/o/g/old.pdf", "keep/other.txt"):
            os.utime(store.full_path(path), (an_hour_ago, an_hour_ago))

        packager = ArtifactPackager(None, store, grace_seconds=30 * 60)
        assert packager.purge_stale() == 2
        assert store.exists("archives/o/new.zip")
        assert store.exists("keep/other.txt")
        assert not store.exists("archives/o/old.zip")
