"""
Tests for RQ job enqueueing and the artifact purge job.
"""

import os
import time
from types import SimpleNamespace

from app.config import settings
from app.models.enums import TaxTreatment
from app.storage.artifact_store import ArtifactStore
from app.worker import jobs


class RecordingQueue:
    def __init__(self):
        self.calls = []

    def enqueue(self, func, *args, **kwargs):
        self.calls.append((func, args, kwargs))
        return SimpleNamespace(id=f"job-{len(self.calls)}")


class TestEnqueue:

    def test_enqueue_analysis(self, monkeypatch):
        queue = RecordingQueue()
        monkeypatch.setattr(jobs, "get_queue", lambda: queue)

        assert jobs.enqueue_analysis("chat-42", "g1") == "job-1"
        func, args, kwargs = queue.calls[0]
        assert func is jobs.analyze_batch_job
        assert args == ("chat-42", "g1")
        assert kwargs["job_timeout"] == settings.JOB_TIMEOUT_SECONDS

    def test_enqueue_confirmation_passes_plain_values(self, monkeypatch):
        queue = RecordingQueue()
        monkeypatch.setattr(jobs, "get_queue", lambda: queue)

        jobs.enqueue_confirmation("chat-42", "g1", TaxTreatment.WITHHOLDING)
        func, args, _ = queue.calls[0]
        assert func is jobs.confirm_batch_job
        assert args == ("chat-42", "g1", "withholding")

    def test_enqueue_resume(self, monkeypatch):
        queue = RecordingQueue()
        monkeypatch.setattr(jobs, "get_queue", lambda: queue)

        assert jobs.enqueue_resume("chat-42", "g1") == "job-1"
        func, args, kwargs = queue.calls[0]
        assert func is jobs.resume_batch_job
        assert args == ("chat-42", "g1")
        assert kwargs["description"] == "resume g1"


class TestPurgeJob:

    def test_removes_stale_artifacts(self, tmp_path, monkeypatch):
        monkeypatch.setattr(settings, "ARTIFACT_ROOT", str(tmp_path))
        store = ArtifactStore(root=str(tmp_path))
        store.save_bytes("archives/o/old.zip", b"zip")
        store.save_bytes("archives/o/fresh.zip", b"zip")
        old = time.time() - 2 * settings.ARTIFACT_GRACE_SECONDS
        os.utime(store.full_path("archives/o/old.zip"), (old, old))

        assert jobs.purge_artifacts_job() == {"removed": 1}
        assert store.exists("archives/o/fresh.zip")
