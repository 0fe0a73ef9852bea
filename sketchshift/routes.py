from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile

from sketchshift.config import API_PREFIX
from sketchshift.dependencies import get_invoker, get_job_repos, get_submission_service
from sketchshift.errors import NotFound, PersistenceError, ValidationError
from sketchshift.schemas.job import JobKind, JobStatusView, PendingJobsView
from sketchshift.schemas.upload import PreviewResponse, SubmissionResponse

router = APIRouter(prefix=API_PREFIX)


def _response(submission) -> SubmissionResponse:
    return SubmissionResponse(
        subjectRef=submission.job.subjectRef,
        inputUrl=submission.inputUrl,
        storageBackend=submission.storageBackend,
        job=JobStatusView.from_job(submission.job),
        retryScheduled=submission.retryScheduled,
    )


async def _sketch_input(file: Optional[UploadFile], code: Optional[str]):
    if file is not None:
        return await file.read(), file.filename or ""
    if code and code.strip():
        return code.encode("utf-8"), "sketch.pde"
    raise HTTPException(status_code=400, detail="Either a .pde file or code is required")


def _run(action, *args):
    try:
        return action(*args)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))


# --------------------------------------------------
# Sketch upload (PDE -> JS conversion job)
# --------------------------------------------------
@router.post("/works/{subjectRef}/sketch", status_code=201, response_model=SubmissionResponse)
async def upload_sketch(
    subjectRef: str,
    file: Optional[UploadFile] = File(None),
    code: Optional[str] = Form(None),
    submissions=Depends(get_submission_service),
):
    content, name = await _sketch_input(file, code)
    return _response(_run(submissions.submit_sketch, subjectRef, content, name))


@router.put("/works/{subjectRef}/sketch", response_model=SubmissionResponse)
async def update_sketch(
    subjectRef: str,
    file: Optional[UploadFile] = File(None),
    code: Optional[str] = Form(None),
    submissions=Depends(get_submission_service),
):
    content, name = await _sketch_input(file, code)
    return _response(_run(submissions.update_sketch, subjectRef, content, name))


# --------------------------------------------------
# Thumbnail upload (image -> WebP conversion job)
# --------------------------------------------------
@router.post("/works/{subjectRef}/thumbnail", status_code=201, response_model=SubmissionResponse)
async def upload_thumbnail(
    subjectRef: str,
    file: UploadFile = File(...),
    imageType: str = Form("thumbnail"),
    submissions=Depends(get_submission_service),
):
    if imageType not in ("thumbnail", "work"):
        raise HTTPException(status_code=400, detail="imageType must be 'thumbnail' or 'work'")

    content = await file.read()
    return _response(_run(submissions.submit_image, subjectRef, content, file.filename or "", imageType))


# --------------------------------------------------
# Preview (not persisted as a job)
# --------------------------------------------------
@router.post("/preview", response_model=PreviewResponse)
async def preview(
    file: Optional[UploadFile] = File(None),
    code: Optional[str] = Form(None),
    submissions=Depends(get_submission_service),
):
    content, name = b"", ""
    if file is not None:
        content, name = await file.read(), file.filename or ""

    result = _run(submissions.preview, content, name, code or "")
    return PreviewResponse(
        success=True,
        previewUrl=result.previewUrl,
        jsUrl=result.jsUrl,
        message=result.message,
    )


# --------------------------------------------------
# Job Status
# --------------------------------------------------
@router.get("/jobs/{kind}", response_model=PendingJobsView)
def pending_jobs(kind: JobKind, limit: int = Query(20, ge=1, le=500), repos=Depends(get_job_repos)):
    repo = repos[kind]
    jobs = _run(repo.list_pending, limit)
    return PendingJobsView(
        kind=kind,
        pendingCount=_run(repo.count_pending),
        jobs=[JobStatusView.from_job(j) for j in jobs],
    )


@router.get("/jobs/{kind}/{jobId}", response_model=JobStatusView)
def job_status(kind: JobKind, jobId: int, repos=Depends(get_job_repos)):
    job = _run(repos[kind].get, jobId)
    return JobStatusView.from_job(job)


@router.post("/jobs/{kind}/{jobId}/convert", response_model=JobStatusView)
def convert_job(kind: JobKind, jobId: int, invoker=Depends(get_invoker)):
    outcome = _run(invoker.convert, kind, jobId)

    if outcome.skipped and not outcome.succeeded:
        raise HTTPException(status_code=409, detail=f"job {jobId} is already being converted")
    if not outcome.succeeded:
        raise HTTPException(status_code=502, detail=outcome.job.errorMessage or "conversion failed")

    return JobStatusView.from_job(outcome.job)
