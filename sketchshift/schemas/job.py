# sketchshift/schemas/job.py
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


class JobKind(str, Enum):
    SCRIPT = "script"
    IMAGE = "image"


class ConversionJob(BaseModel):
    """
    A tracked unit of work turning a raw input into a derived artifact.

    Script jobs carry the sketch source inline (inputContent) and/or a
    stored copy (inputRef). Image jobs only use inputRef.
    """

    id: int = 0
    kind: JobKind = JobKind.SCRIPT

    subjectRef: str

    inputContent: str = ""
    inputRef: str = ""
    fileName: str = ""
    originalName: str = ""
    canvasId: str = ""

    status: JobStatus = JobStatus.PENDING
    derivedRef: str = ""
    errorMessage: str = ""

    # -------------------------
    # Concurrency bookkeeping
    # -------------------------
    revision: int = 0
    leaseToken: Optional[str] = None
    leaseExpiresAt: Optional[datetime] = None

    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)

    def lease_active(self, now: Optional[datetime] = None) -> bool:
        if not self.leaseToken or not self.leaseExpiresAt:
            return False
        return self.leaseExpiresAt > (now or utcnow())


class ImageJob(ConversionJob):
    kind: JobKind = JobKind.IMAGE
    imageType: str = "work"  # work | thumbnail

    # Present only when job is processed
    originalSize: int = 0
    derivedSize: int = 0
    compressionRatio: float = 0.0
    width: int = 0
    height: int = 0


JOB_MODELS = {
    JobKind.SCRIPT: ConversionJob,
    JobKind.IMAGE: ImageJob,
}


class Lease(BaseModel):
    jobId: int
    token: str
    revision: int
    expiresAt: datetime


class JobStatusView(BaseModel):
    jobId: int
    kind: JobKind
    subjectRef: str
    status: JobStatus
    derivedRef: Optional[str] = None
    error: Optional[str] = None
    canvasId: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime

    # Image jobs only
    width: Optional[int] = None
    height: Optional[int] = None
    compressionRatio: Optional[float] = None

    @classmethod
    def from_job(cls, job: ConversionJob) -> "JobStatusView":
        view = cls(
            jobId=job.id,
            kind=job.kind,
            subjectRef=job.subjectRef,
            status=job.status,
            derivedRef=job.derivedRef or None,
            error=job.errorMessage or None,
            canvasId=job.canvasId or None,
            createdAt=job.createdAt,
            updatedAt=job.updatedAt,
        )
        if isinstance(job, ImageJob) and job.status == JobStatus.PROCESSED:
            view.width = job.width
            view.height = job.height
            view.compressionRatio = job.compressionRatio
        return view


class PendingJobsView(BaseModel):
    kind: JobKind
    pendingCount: int
    jobs: List[JobStatusView]
