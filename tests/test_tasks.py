import json

import pytest
import requests

from sketchshift.schemas.job import ConversionJob, ImageJob, JobKind, JobStatus
from sketchshift.workers import conversion_tasks


@pytest.fixture(autouse=True)
def wiring(monkeypatch, invoker, repos, gateway):
    monkeypatch.setattr(conversion_tasks, "get_invoker", lambda: invoker)
    monkeypatch.setattr(conversion_tasks, "get_job_repos", lambda: repos)
    monkeypatch.setattr(conversion_tasks, "get_storage_gateway", lambda: gateway)


def test_retry_task_converts_failed_job(repos, invoker, conversion):
    repo = repos[JobKind.SCRIPT]
    jobId = repo.create(ConversionJob(subjectRef="work-1", inputContent="void setup() {}", fileName="r.pde"))
    conversion.push(requests.exceptions.Timeout("timed out"))
    invoker.convert(JobKind.SCRIPT, jobId)

    result = conversion_tasks.retry_conversion.delay(kind="script", jobId=jobId).get()

    assert result["status"] == "processed"
    assert result["derivedRef"] == "/uploads/js/r.js"
    assert result["error"] is None
    assert result["skipped"] is False


def test_retry_task_reports_skip_for_processed_job(repos, invoker):
    repo = repos[JobKind.SCRIPT]
    jobId = repo.create(ConversionJob(subjectRef="work-1", inputContent="void setup() {}"))
    invoker.convert(JobKind.SCRIPT, jobId)

    result = conversion_tasks.retry_conversion.delay(kind="script", jobId=jobId).get()

    assert result["skipped"] is True
    assert result["status"] == "processed"


def test_batch_message_drains_pending_images(repos, local_store):
    repo = repos[JobKind.IMAGE]
    for n in range(3):
        url = local_store.store(b"png", f"p{n}.png", "original")
        repo.create(ImageJob(subjectRef=f"work-{n}", inputRef=url, fileName=f"p{n}.png"))
    repo.create(ImageJob(subjectRef="work-x"))

    body = json.dumps({"type": "batch_conversion", "kind": "image", "batchSize": 10, "timestamp": "2026-01-01T00:00:00+00:00"})
    result = conversion_tasks.handle_batch_message.delay(body=body).get()

    assert result == {"kind": "image", "attempted": 4, "processed": 3, "failed": 1}
    assert repo.count_pending() == 0


def test_cleanup_task_deletes_artifact(local_store):
    url = local_store.store(b"tmp", "preview_9_ab.pde", "preview")

    result = conversion_tasks.cleanup_artifact.delay(url=url).get()

    assert result == {"url": url, "deleted": True}
    assert not local_store.local_path(url).exists()


def test_drain_task_respects_batch_size(repos):
    repo = repos[JobKind.SCRIPT]
    for n in range(3):
        repo.create(ConversionJob(subjectRef=f"work-{n}", inputContent="void setup() {}"))

    result = conversion_tasks.drain_batch.delay(kind="script", batchSize=2).get()

    assert result["attempted"] == 2
    assert result["processed"] == 2
    assert repo.get(3).status == JobStatus.PENDING
