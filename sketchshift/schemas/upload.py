# sketchshift/schemas/upload.py
from pydantic import BaseModel
from typing import Optional

from sketchshift.schemas.job import JobStatusView


class SubmissionResponse(BaseModel):
    subjectRef: str
    inputUrl: str
    storageBackend: str
    job: JobStatusView
    retryScheduled: bool = False


class PreviewResponse(BaseModel):
    success: bool
    previewUrl: str
    jsUrl: Optional[str] = None
    message: Optional[str] = None


class DispatchResult(BaseModel):
    kind: str
    pendingCount: int
    threshold: int
    forced: bool
    sent: bool
    batchSize: int
    messageId: Optional[str] = None
