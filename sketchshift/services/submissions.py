# sketchshift/services/submissions.py

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sketchshift import config
from sketchshift.errors import ConversionFailure, NotFound, TransportError, ValidationError
from sketchshift.schemas.job import ConversionJob, ImageJob, JobKind
from sketchshift.services.storage import generate_file_name, new_canvas_id

log = logging.getLogger(__name__)


@dataclass
class Submission:
    job: ConversionJob
    inputUrl: str
    storageBackend: str
    retryScheduled: bool = False


@dataclass
class Preview:
    previewUrl: str
    jsUrl: Optional[str] = None
    message: Optional[str] = None


# --------------------------------------------------
# Validation helpers
# --------------------------------------------------
def _extension(name: str) -> str:
    return Path(name or "").suffix.lower()


def validate_upload(content: bytes, original_name: str, allowed: set, max_mb: int = config.MAX_UPLOAD_MB) -> str:
    if not content:
        raise ValidationError("uploaded file is empty")

    ext = _extension(original_name)
    if ext not in allowed:
        raise ValidationError(f"extension {ext or '(none)'} is not allowed")

    if len(content) > max_mb * 1024 * 1024:
        raise ValidationError(f"file too large (max {max_mb} MB)")

    return ext


class SubmissionService:
    """
    Job-creating requests: sketch upload / update, image upload, preview.

    The original input must be stored for the request to succeed;
    conversion failures only leave the job in error and schedule a retry.
    """

    def __init__(self, invoker, storage, supervisor, preview_store, max_upload_mb: int = config.MAX_UPLOAD_MB):
        self.invoker = invoker
        self.storage = storage
        self.supervisor = supervisor
        self.preview_store = preview_store
        self.max_upload_mb = max_upload_mb

    @property
    def scripts(self):
        return self.invoker.repo(JobKind.SCRIPT)

    @property
    def images(self):
        return self.invoker.repo(JobKind.IMAGE)

    # -------------------------
    # Sketches (PDE)
    # -------------------------
    def submit_sketch(self, subjectRef: str, content: bytes, original_name: str) -> Submission:
        ext = validate_upload(content, original_name, config.SKETCH_EXTENSIONS, self.max_upload_mb)
        text = self._decode_sketch(content)

        file_name = generate_file_name(ext)
        stored = self.storage.store(content, file_name, "original")

        job = ConversionJob(
            kind=JobKind.SCRIPT,
            subjectRef=subjectRef,
            inputContent=text,
            inputRef=stored.url,
            fileName=file_name,
            originalName=original_name,
            canvasId=new_canvas_id(),
        )
        jobId = self.scripts.create(job)
        return self._convert(JobKind.SCRIPT, jobId, stored)

    def update_sketch(self, subjectRef: str, content: bytes, original_name: str) -> Submission:
        ext = validate_upload(content, original_name, config.SKETCH_EXTENSIONS, self.max_upload_mb)
        text = self._decode_sketch(content)

        try:
            current = self.scripts.find_by_subject(subjectRef)
        except NotFound:
            log.info("subject %s has no sketch job yet, creating one", subjectRef)
            return self.submit_sketch(subjectRef, content, original_name)

        file_name = generate_file_name(ext)
        stored = self.storage.store(content, file_name, "original")
        self.scripts.replace_input(
            current.id,
            input_content=text,
            input_ref=stored.url,
            file_name=file_name,
            original_name=original_name,
        )

        if current.inputRef and current.inputRef != stored.url:
            self.storage.delete(current.inputRef)

        return self._convert(JobKind.SCRIPT, current.id, stored)

    # -------------------------
    # Images (work image / thumbnail)
    # -------------------------
    def submit_image(self, subjectRef: str, content: bytes, original_name: str, image_type: str = "thumbnail") -> Submission:
        ext = validate_upload(content, original_name, config.IMAGE_EXTENSIONS, self.max_upload_mb)

        prefix = "thumb_" if image_type == "thumbnail" else ""
        file_name = generate_file_name(ext, prefix=prefix)
        stored = self.storage.store(content, file_name, "original")

        job = ImageJob(
            subjectRef=subjectRef,
            inputRef=stored.url,
            fileName=file_name,
            originalName=original_name,
            canvasId=new_canvas_id("imageCanvas_"),
            imageType=image_type,
        )
        jobId = self.images.create(job)
        return self._convert(JobKind.IMAGE, jobId, stored)

    # -------------------------
    # Preview (ephemeral)
    # -------------------------
    def preview(self, content: bytes, original_name: str = "", code: str = "") -> Preview:
        if content:
            validate_upload(content, original_name, config.SKETCH_EXTENSIONS, self.max_upload_mb)
            source = self._decode_sketch(content)
        elif code:
            source = code
        else:
            raise ValidationError("either a file or code is required")

        source_name = generate_file_name(".pde", prefix="preview_")
        preview_url = self.preview_store.store(source.encode("utf-8"), source_name, "preview")
        self.supervisor.schedule_cleanup(preview_url)

        try:
            js = self.invoker.preview_script(
                source,
                file_name=source_name,
                original_name=original_name or source_name,
                canvas_id=new_canvas_id("preview_canvas_"),
            )
        except (TransportError, ConversionFailure) as e:
            # The preview still works without compiled JS
            log.warning("preview conversion failed: %s", e)
            return Preview(previewUrl=preview_url, message=str(e))

        js_url = self.preview_store.store(js.encode("utf-8"), Path(source_name).stem + ".js", "preview")
        self.supervisor.schedule_cleanup(js_url)
        return Preview(previewUrl=preview_url, jsUrl=js_url)

    # -------------------------
    # Internals
    # -------------------------
    def _convert(self, kind: JobKind, jobId: int, stored) -> Submission:
        outcome = self.invoker.convert(kind, jobId)

        retry = False
        if not outcome.succeeded and outcome.retryable:
            retry = self.supervisor.submit(kind, jobId)

        return Submission(
            job=outcome.job,
            inputUrl=stored.url,
            storageBackend=stored.backend,
            retryScheduled=retry,
        )

    def _decode_sketch(self, content: bytes) -> str:
        try:
            return content.decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError("sketch source must be UTF-8 text")
