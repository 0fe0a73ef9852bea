import pytest
import requests
from fastapi.testclient import TestClient

from sketchshift.dependencies import get_invoker, get_job_repos, get_submission_service
from sketchshift.main import app
from sketchshift.schemas.job import ConversionJob, JobKind
from sketchshift.services.submissions import SubmissionService

SKETCH = b"void setup() { size(100, 100); }"


@pytest.fixture
def api(invoker, gateway, supervisor, local_store, repos):
    service = SubmissionService(invoker, gateway, supervisor, local_store)
    app.dependency_overrides[get_submission_service] = lambda: service
    app.dependency_overrides[get_job_repos] = lambda: repos
    app.dependency_overrides[get_invoker] = lambda: invoker
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(api):
    resp = api.get("/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_upload_sketch_file(api):
    resp = api.post("/v1/works/work-1/sketch", files={"file": ("circle.pde", SKETCH, "text/plain")})

    assert resp.status_code == 201
    body = resp.json()
    assert body["subjectRef"] == "work-1"
    assert body["storageBackend"] == "local"
    assert body["retryScheduled"] is False
    assert body["job"]["status"] == "processed"
    assert body["job"]["derivedRef"].startswith("/uploads/js/")
    assert body["job"]["error"] is None


def test_upload_sketch_code(api, repos):
    resp = api.post("/v1/works/work-1/sketch", data={"code": "void draw() {}"})

    assert resp.status_code == 201
    job = repos[JobKind.SCRIPT].find_by_subject("work-1")
    assert job.inputContent == "void draw() {}"
    assert job.originalName == "sketch.pde"


def test_upload_sketch_conversion_failure_still_201(api, conversion, supervisor):
    conversion.push(requests.exceptions.Timeout("slow"))

    resp = api.post("/v1/works/work-1/sketch", files={"file": ("circle.pde", SKETCH, "text/plain")})

    assert resp.status_code == 201
    body = resp.json()
    assert body["job"]["status"] == "error"
    assert "slow" in body["job"]["error"]
    assert body["retryScheduled"] is True
    assert supervisor.submitted == [(JobKind.SCRIPT, body["job"]["jobId"])]


@pytest.mark.parametrize("kwargs", [
    {},
    {"data": {"code": "   "}},
    {"files": {"file": ("notes.txt", SKETCH, "text/plain")}},
    {"files": {"file": ("empty.pde", b"", "text/plain")}},
])
def test_upload_sketch_rejects_bad_input(api, kwargs):
    resp = api.post("/v1/works/work-1/sketch", **kwargs)
    assert resp.status_code == 400


def test_update_sketch_keeps_job(api):
    created = api.post("/v1/works/work-1/sketch", files={"file": ("a.pde", SKETCH, "text/plain")}).json()

    resp = api.put("/v1/works/work-1/sketch", files={"file": ("b.pde", b"void draw() {}", "text/plain")})

    assert resp.status_code == 200
    assert resp.json()["job"]["jobId"] == created["job"]["jobId"]
    assert resp.json()["job"]["status"] == "processed"


def test_upload_thumbnail(api):
    resp = api.post(
        "/v1/works/work-2/thumbnail",
        files={"file": ("cover.png", b"\x89PNG data", "image/png")},
    )

    assert resp.status_code == 201
    job = resp.json()["job"]
    assert job["kind"] == "image"
    assert job["status"] == "processed"
    assert (job["width"], job["height"], job["compressionRatio"]) == (64, 32, 60.0)


def test_upload_thumbnail_rejects_unknown_image_type(api):
    resp = api.post(
        "/v1/works/work-2/thumbnail",
        files={"file": ("cover.png", b"\x89PNG data", "image/png")},
        data={"imageType": "banner"},
    )
    assert resp.status_code == 400


def test_preview(api, supervisor):
    resp = api.post("/v1/preview", data={"code": "void setup() {}"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["previewUrl"].startswith("/uploads/preview/")
    assert body["jsUrl"].endswith(".js")
    assert len(supervisor.cleanups) == 2


def test_preview_without_input_is_400(api):
    assert api.post("/v1/preview").status_code == 400


def test_job_status_and_pending_listing(api, repos):
    repo = repos[JobKind.SCRIPT]
    first = repo.create(ConversionJob(subjectRef="work-1", inputContent="a"))
    repo.create(ConversionJob(subjectRef="work-2", inputContent="b"))

    resp = api.get(f"/v1/jobs/script/{first}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"
    assert resp.json()["derivedRef"] is None

    resp = api.get("/v1/jobs/script", params={"limit": 1})
    assert resp.status_code == 200
    assert resp.json()["pendingCount"] == 2
    assert [j["jobId"] for j in resp.json()["jobs"]] == [first]


def test_job_status_errors(api):
    assert api.get("/v1/jobs/script/999").status_code == 404
    assert api.get("/v1/jobs/video/1").status_code == 422


def test_convert_endpoint(api, repos, conversion):
    repo = repos[JobKind.SCRIPT]
    ok = repo.create(ConversionJob(subjectRef="work-1", inputContent="void setup() {}", fileName="ok.pde"))
    busy = repo.create(ConversionJob(subjectRef="work-2", inputContent="void setup() {}"))
    repo.claim(busy, lease_seconds=60)

    resp = api.post(f"/v1/jobs/script/{ok}/convert")
    assert resp.status_code == 200
    assert resp.json()["derivedRef"] == "/uploads/js/ok.js"

    assert api.post(f"/v1/jobs/script/{busy}/convert").status_code == 409
    assert api.post("/v1/jobs/script/999/convert").status_code == 404

    failing = repo.create(ConversionJob(subjectRef="work-3", inputContent="void setup() {"))
    conversion.push(requests.exceptions.ConnectionError("refused"))
    resp = api.post(f"/v1/jobs/script/{failing}/convert")
    assert resp.status_code == 502
    assert "refused" in resp.json()["detail"]
