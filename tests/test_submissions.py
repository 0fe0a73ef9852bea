import pytest
import requests
from fakes import FakeResponse, RecordingSupervisor

from sketchshift.errors import NotFound, StorageError, ValidationError
from sketchshift.schemas.job import JobKind, JobStatus
from sketchshift.services.storage import StorageGateway
from sketchshift.services.submissions import SubmissionService, validate_upload

SKETCH = b"void setup() { size(200, 200); }"


@pytest.fixture
def service(invoker, gateway, supervisor, local_store):
    return SubmissionService(
        invoker=invoker,
        storage=gateway,
        supervisor=supervisor,
        preview_store=local_store,
        max_upload_mb=1,
    )


def _stored_files(local_store, namespace):
    return sorted(p.name for p in (local_store.root / namespace).iterdir())


def test_submit_sketch_stores_original_and_converts(service, local_store):
    result = service.submit_sketch("work-1", SKETCH, "circle.pde")

    assert result.storageBackend == "local"
    assert result.inputUrl.startswith("/uploads/original/")
    assert local_store.fetch(result.inputUrl) == SKETCH
    assert result.retryScheduled is False

    job = result.job
    assert job.status == JobStatus.PROCESSED
    assert job.subjectRef == "work-1"
    assert job.originalName == "circle.pde"
    assert job.canvasId.startswith("processingCanvas_")
    assert job.derivedRef.endswith(".js")


def test_failed_conversion_still_succeeds_and_schedules_retry(service, conversion, supervisor):
    conversion.push(requests.exceptions.ConnectionError("refused"))

    result = service.submit_sketch("work-1", SKETCH, "circle.pde")

    assert result.job.status == JobStatus.ERROR
    assert result.retryScheduled is True
    assert supervisor.submitted == [(JobKind.SCRIPT, result.job.id)]


def test_rejected_retry_is_reported(invoker, gateway, local_store, conversion):
    supervisor = RecordingSupervisor(accept=False)
    service = SubmissionService(invoker, gateway, supervisor, local_store)
    conversion.push(FakeResponse(500, None))

    result = service.submit_sketch("work-1", SKETCH, "circle.pde")

    assert result.retryScheduled is False
    assert len(supervisor.submitted) == 1


@pytest.mark.parametrize("content, name", [
    (b"", "empty.pde"),
    (SKETCH, "notes.txt"),
    (SKETCH, "noextension"),
    (b"\xff\xfe\xfa", "binary.pde"),
    (b"x" * (1024 * 1024 + 1), "huge.pde"),
])
def test_invalid_sketch_uploads_are_rejected(service, repos, local_store, content, name):
    with pytest.raises(ValidationError):
        service.submit_sketch("work-1", content, name)

    assert _stored_files(local_store, "original") == []
    with pytest.raises(NotFound):
        repos[JobKind.SCRIPT].find_by_subject("work-1")


def test_validate_upload_returns_lowercase_extension():
    assert validate_upload(b"x", "Sketch.PDE", {".pde"}) == ".pde"


def test_storage_failure_fails_the_request(invoker, supervisor, local_store, repos):
    class Refusing:
        name = "refusing"

        def store(self, content, file_name, namespace):
            raise StorageError("disk full")

        def owns(self, url):
            return False

    service = SubmissionService(invoker, StorageGateway([Refusing()]), supervisor, local_store)

    with pytest.raises(StorageError):
        service.submit_sketch("work-1", SKETCH, "circle.pde")
    assert repos[JobKind.SCRIPT].count_pending() == 0


def test_update_without_existing_job_creates_one(service):
    result = service.update_sketch("work-5", SKETCH, "circle.pde")

    assert result.job.subjectRef == "work-5"
    assert result.job.status == JobStatus.PROCESSED


def test_update_replaces_input_and_reconverts(service, local_store, conversion):
    first = service.submit_sketch("work-1", SKETCH, "circle.pde")

    second = service.update_sketch("work-1", b"void setup() { size(50, 50); }", "square.pde")

    assert second.job.id == first.job.id
    assert second.job.revision == 1
    assert second.job.status == JobStatus.PROCESSED
    assert second.job.originalName == "square.pde"
    assert conversion.payloads[-1]["pdeContent"] == "void setup() { size(50, 50); }"

    assert not local_store.local_path(first.inputUrl).exists()
    assert local_store.fetch(second.inputUrl) == b"void setup() { size(50, 50); }"


def test_submit_thumbnail_uses_thumb_prefix(service, local_store):
    result = service.submit_image("work-2", b"\x89PNG data", "cover.png")

    job = result.job
    assert job.kind == JobKind.IMAGE
    assert job.imageType == "thumbnail"
    assert job.fileName.startswith("thumb_")
    assert job.canvasId.startswith("imageCanvas_")
    assert job.status == JobStatus.PROCESSED
    assert job.derivedRef.startswith("/uploads/thumbnail/thumb_")
    assert job.width == 64


def test_submit_work_image_goes_to_original_namespace(service):
    result = service.submit_image("work-2", b"GIF89a", "anim.gif", image_type="work")

    assert not result.job.fileName.startswith("thumb_")
    assert result.job.derivedRef.startswith("/uploads/original/")
    assert result.job.derivedRef.endswith(".webp")


def test_webp_work_image_keeps_uploaded_original(service, local_store):
    uploaded = b"RIFF\x00\x00\x00\x00WEBPVP8 original bytes"

    result = service.submit_image("work-1", uploaded, "art.webp", image_type="work")

    job = result.job
    assert job.status == JobStatus.PROCESSED
    assert job.derivedRef != job.inputRef
    assert job.derivedRef.endswith("_converted.webp")
    assert local_store.fetch(job.inputRef) == uploaded
    assert local_store.fetch(job.derivedRef) == b"RIFF"


def test_webp_thumbnail_keeps_plain_name(service):
    result = service.submit_image("work-1", b"RIFF....WEBP", "cover.webp")

    assert result.job.derivedRef.startswith("/uploads/thumbnail/thumb_")
    assert not result.job.derivedRef.endswith("_converted.webp")


def test_submit_image_rejects_sketch_files(service):
    with pytest.raises(ValidationError):
        service.submit_image("work-2", SKETCH, "circle.pde")


def test_preview_from_code_schedules_cleanup(service, supervisor, local_store, repos):
    preview = service.preview(b"", code="void setup() {}")

    assert preview.previewUrl.startswith("/uploads/preview/preview_")
    assert preview.jsUrl.endswith(".js")
    assert preview.message is None
    assert local_store.fetch(preview.previewUrl) == b"void setup() {}"
    assert local_store.fetch(preview.jsUrl) == b"// compiled\nvoid setup() {}"
    assert [url for url, _ in supervisor.cleanups] == [preview.previewUrl, preview.jsUrl]
    assert repos[JobKind.SCRIPT].count_pending() == 0


def test_preview_survives_conversion_failure(service, supervisor, conversion, local_store):
    conversion.push(FakeResponse(200, {"success": False, "message": "missing semicolon"}))

    preview = service.preview(SKETCH, original_name="circle.pde")

    assert preview.jsUrl is None
    assert preview.message == "missing semicolon"
    assert local_store.fetch(preview.previewUrl) == SKETCH
    assert len(supervisor.cleanups) == 1


def test_preview_requires_file_or_code(service):
    with pytest.raises(ValidationError):
        service.preview(b"", code="")
