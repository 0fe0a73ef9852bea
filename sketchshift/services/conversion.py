# sketchshift/services/conversion.py

import base64
import binascii
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Type

import requests
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from sketchshift import config
from sketchshift.errors import (
    ConversionFailure,
    LeaseLost,
    NotFound,
    PersistenceError,
    TransportError,
)
from sketchshift.schemas.conversion import (
    ImageConversionRequest,
    ImageConversionResponse,
    ScriptConversionRequest,
    ScriptConversionResponse,
)
from sketchshift.schemas.job import ConversionJob, JobKind, JobStatus, Lease
from sketchshift.services.storage import StorageGateway

log = logging.getLogger(__name__)

NO_INPUT_MESSAGE = "no input content"
PREVIEW_JOB_ID = 0
INPUT_NAMESPACE = "original"


def derived_image_name(job: ConversionJob, namespace: str) -> str:
    """`<stem>.webp`, or `<stem>_converted.webp` when it would replace the input."""
    source = job.fileName or f"image_{job.id}"
    stem = Path(source).stem
    if namespace == INPUT_NAMESPACE and Path(source).suffix.lower() == ".webp":
        return f"{stem}_converted.webp"
    return f"{stem}.webp"


# --------------------------------------------------
# HTTP client for the conversion functions
# --------------------------------------------------
class ConversionClient:
    def __init__(
        self,
        script_endpoint: str = config.PDE_CONVERSION_URL,
        image_endpoint: str = config.IMAGE_CONVERSION_URL,
        timeout: float = config.CONVERSION_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.script_endpoint = script_endpoint
        self.image_endpoint = image_endpoint or script_endpoint
        self.timeout = timeout
        self.session = session or requests.Session()

    def convert_script(self, request: ScriptConversionRequest) -> ScriptConversionResponse:
        return self._post(self.script_endpoint, request, ScriptConversionResponse)

    def convert_image(self, request: ImageConversionRequest) -> ImageConversionResponse:
        return self._post(self.image_endpoint, request, ImageConversionResponse)

    def _post(self, endpoint: str, request: BaseModel, response_model: Type[BaseModel]):
        if not endpoint:
            raise ConversionFailure("conversion function endpoint is not configured")

        try:
            resp = self.session.post(endpoint, json=request.model_dump(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"conversion function call failed: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if not 200 <= resp.status_code < 300:
            message = body.get("message") if isinstance(body, dict) else None
            raise ConversionFailure(
                message or f"conversion function returned HTTP {resp.status_code}"
            )

        if not isinstance(body, dict):
            raise ConversionFailure("conversion function response could not be parsed")

        try:
            return response_model.model_validate(body)
        except SchemaError as e:
            raise ConversionFailure(f"conversion function response could not be parsed: {e}") from e


# --------------------------------------------------
# Outcome of one conversion attempt
# --------------------------------------------------
@dataclass
class ConversionOutcome:
    job: ConversionJob
    succeeded: bool
    retryable: bool = False
    skipped: bool = False


class _JobFailed(Exception):
    def __init__(self, message: str, retryable: bool):
        super().__init__(message)
        self.message = message
        self.retryable = retryable


# --------------------------------------------------
# Invoker
# --------------------------------------------------
class ConversionInvoker:
    """
    Drives one job through pending/error -> processing -> processed | error.

    The job is claimed through a lease before anything else happens, so
    a detached retry and an update-driven re-conversion of the same job
    never call the conversion function concurrently.
    """

    def __init__(
        self,
        repos: Dict[JobKind, object],
        client: ConversionClient,
        storage: StorageGateway,
        lease_seconds: int = config.JOB_LEASE_SECONDS,
        max_supersede: int = config.MAX_SUPERSEDE,
    ):
        self.repos = {JobKind(k): v for k, v in repos.items()}
        self.client = client
        self.storage = storage
        self.lease_seconds = lease_seconds
        self.max_supersede = max_supersede

    def repo(self, kind):
        return self.repos[JobKind(kind)]

    def convert(self, kind, jobId: int) -> ConversionOutcome:
        kind = JobKind(kind)
        repo = self.repo(kind)

        rejected = repo.reject_without_input(jobId, NO_INPUT_MESSAGE)
        if rejected is not None:
            log.warning("%s job %s failed: %s", kind.value, jobId, NO_INPUT_MESSAGE)
            return ConversionOutcome(job=rejected, succeeded=False, retryable=False)

        for attempt in range(self.max_supersede + 1):
            lease = repo.claim(jobId, self.lease_seconds)
            if lease is None:
                job = repo.get(jobId)
                log.info(
                    "%s job %s not claimed (status=%s, lease held=%s)",
                    kind.value, jobId, job.status.value, job.lease_active(),
                )
                return ConversionOutcome(
                    job=job,
                    succeeded=job.status == JobStatus.PROCESSED,
                    skipped=True,
                )

            try:
                return self._run(kind, repo, lease)
            except LeaseLost as e:
                if not e.superseded:
                    log.warning("%s job %s: %s", kind.value, jobId, e)
                    return ConversionOutcome(job=repo.get(jobId), succeeded=False, skipped=True)
                log.info("%s job %s superseded during conversion, converting new input", kind.value, jobId)

        job = repo.get(jobId)
        log.warning("%s job %s kept changing; left %s", kind.value, jobId, job.status.value)
        return ConversionOutcome(job=job, succeeded=False, retryable=True)

    def convert_script(self, jobId: int) -> ConversionOutcome:
        return self.convert(JobKind.SCRIPT, jobId)

    def convert_image(self, jobId: int) -> ConversionOutcome:
        return self.convert(JobKind.IMAGE, jobId)

    # -------------------------
    # One claimed attempt
    # -------------------------
    def _run(self, kind: JobKind, repo, lease: Lease) -> ConversionOutcome:
        job = repo.get(lease.jobId)
        log.info("converting %s job %s (revision %s)", kind.value, job.id, lease.revision)

        try:
            if kind == JobKind.SCRIPT:
                derived_ref, stats = self._convert_script(repo, job, lease)
            else:
                derived_ref, stats = self._convert_image(job)
        except _JobFailed as e:
            return self._fail(repo, job, lease, e.message, e.retryable)

        try:
            done = repo.update_status(
                job.id, JobStatus.PROCESSED, derived_ref=derived_ref, lease=lease, **stats
            )
        except PersistenceError as e:
            # Artifact already produced; the status write is best effort
            log.error("%s job %s converted to %s but status update failed: %s", kind.value, job.id, derived_ref, e)
            done = job.model_copy(update={"status": JobStatus.PROCESSED, "derivedRef": derived_ref, "errorMessage": ""})

        log.info("%s job %s processed to %s", kind.value, job.id, derived_ref)
        return ConversionOutcome(job=done, succeeded=True)

    def _fail(self, repo, job: ConversionJob, lease: Lease, message: str, retryable: bool) -> ConversionOutcome:
        log.warning("%s job %s failed: %s", job.kind.value, job.id, message)
        try:
            failed = repo.update_status(job.id, JobStatus.ERROR, error_message=message, lease=lease)
        except PersistenceError as e:
            log.error("%s job %s: could not record failure: %s", job.kind.value, job.id, e)
            failed = job.model_copy(update={"status": JobStatus.ERROR, "errorMessage": message})
        return ConversionOutcome(job=failed, succeeded=False, retryable=retryable)

    def _convert_script(self, repo, job: ConversionJob, lease: Lease):
        content = job.inputContent
        if not content and job.inputRef:
            content = self._read_input(job).decode("utf-8", errors="replace")
            if content:
                repo.patch(job.id, lease=lease, inputContent=content)
        if not content:
            raise _JobFailed(NO_INPUT_MESSAGE, retryable=False)

        request = ScriptConversionRequest(
            processingId=job.id,
            pdeContent=content,
            fileName=job.fileName,
            originalName=job.originalName,
            canvasId=job.canvasId,
            isPreview=False,
        )
        response = self._call(self.client.convert_script, request)
        if not response.jsContent:
            raise _JobFailed("conversion function returned empty JavaScript content", retryable=True)

        js_name = Path(job.fileName or f"sketch_{job.id}.pde").stem + ".js"
        stored = self._store(response.jsContent.encode("utf-8"), js_name, "js")
        return stored, {}

    def _convert_image(self, job: ConversionJob):
        if not job.inputRef:
            raise _JobFailed(NO_INPUT_MESSAGE, retryable=False)
        data = self._read_input(job)
        if not data:
            raise _JobFailed(NO_INPUT_MESSAGE, retryable=False)

        request = ImageConversionRequest(
            processingId=job.id,
            imageData=base64.b64encode(data).decode("ascii"),
            fileName=job.fileName,
            originalName=job.originalName,
            canvasId=job.canvasId,
            isPreview=False,
        )
        response = self._call(self.client.convert_image, request)
        if not response.imageDerivedData:
            raise _JobFailed("conversion function returned empty image data", retryable=True)

        try:
            derived = base64.b64decode(response.imageDerivedData, validate=True)
        except (binascii.Error, ValueError) as e:
            raise _JobFailed(f"conversion function returned invalid image data: {e}", retryable=True)

        namespace = "thumbnail" if getattr(job, "imageType", "") == "thumbnail" else "original"
        stored = self._store(derived, derived_image_name(job, namespace), namespace)

        original_size = response.originalSize or len(data)
        derived_size = response.derivedSize or len(derived)
        ratio = response.compressionRatio
        if not ratio and original_size:
            ratio = round((original_size - derived_size) / original_size * 100, 2)

        stats = {
            "originalSize": original_size,
            "derivedSize": derived_size,
            "compressionRatio": ratio,
            "width": response.width,
            "height": response.height,
        }
        return stored, stats

    def _read_input(self, job: ConversionJob) -> bytes:
        try:
            return self.storage.fetch(job.inputRef)
        except NotFound:
            return b""
        except TransportError as e:
            raise _JobFailed(f"failed to read input file: {e}", retryable=True)
        except OSError as e:
            raise _JobFailed(f"failed to read input file: {e}", retryable=True)

    def _call(self, fn, request):
        try:
            response = fn(request)
        except (TransportError, ConversionFailure) as e:
            raise _JobFailed(str(e), retryable=True)

        if not response.success:
            raise _JobFailed(response.message or "conversion function reported failure", retryable=True)
        return response

    def _store(self, content: bytes, file_name: str, namespace: str) -> str:
        try:
            return self.storage.store(content, file_name, namespace).url
        except PersistenceError as e:
            raise _JobFailed(f"failed to store derived artifact: {e}", retryable=True)

    # -------------------------
    # Preview (not persisted)
    # -------------------------
    def preview_script(self, content: str, file_name: str, original_name: str = "", canvas_id: str = "") -> str:
        """
        Ephemeral conversion for a preview. No job record is read or
        written; failures are raised to the caller.
        """
        if not content:
            raise ConversionFailure(NO_INPUT_MESSAGE)

        request = ScriptConversionRequest(
            processingId=PREVIEW_JOB_ID,
            pdeContent=content,
            fileName=file_name,
            originalName=original_name,
            canvasId=canvas_id,
            isPreview=True,
        )
        response = self.client.convert_script(request)
        if not response.success:
            raise ConversionFailure(response.message or "conversion function reported failure")
        if not response.jsContent:
            raise ConversionFailure("conversion function returned empty JavaScript content")
        return response.jsContent
