# sketchshift/repos/jobs.py
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Dict, List, Optional

import redis
from redis.exceptions import RedisError, WatchError

from sketchshift import config
from sketchshift.errors import LeaseLost, NotFound, PersistenceError, ValidationError
from sketchshift.schemas.job import (
    JOB_MODELS,
    ConversionJob,
    JobKind,
    JobStatus,
    Lease,
    utcnow,
)

log = logging.getLogger(__name__)

TERMINAL_STATUSES = {JobStatus.PROCESSED, JobStatus.ERROR}
DEFAULT_ERROR_MESSAGE = "conversion failed"

# Fields owned by the store itself; never written through patch()
_PROTECTED_FIELDS = {"id", "kind", "subjectRef", "status", "revision", "leaseToken", "leaseExpiresAt", "createdAt"}

Mutator = Callable[[ConversionJob], Optional[ConversionJob]]


def _is_empty(value) -> bool:
    return value is None or value == ""


def _release_to_pending(job: ConversionJob) -> ConversionJob:
    return job.model_copy(update={
        "status": JobStatus.PENDING,
        "leaseToken": None,
        "leaseExpiresAt": None,
        "updatedAt": utcnow(),
    })


def enforce_invariants(job: ConversionJob) -> ConversionJob:
    if job.status == JobStatus.PROCESSED:
        if not job.derivedRef:
            raise ValidationError(f"job {job.id}: processed requires a derived artifact")
        job.errorMessage = ""
    elif job.status == JobStatus.ERROR and not job.errorMessage:
        job.errorMessage = DEFAULT_ERROR_MESSAGE
    if job.status in TERMINAL_STATUSES:
        job.leaseToken = None
        job.leaseExpiresAt = None
    return job


class BaseJobRepo:
    """
    Conversion job store.

    Every mutation goes through _mutate(), an atomic read-modify-write
    provided by the backend. Status writes that carry a Lease are only
    applied while that lease is still held.
    """

    def __init__(self, kind):
        self.kind = JobKind(kind)
        self.model = JOB_MODELS[self.kind]

    # -------------------------------------------------
    # Backend primitives
    # -------------------------------------------------
    def _next_id(self) -> int:
        raise NotImplementedError

    def _insert(self, job: ConversionJob):
        raise NotImplementedError

    def _load(self, jobId: int) -> Optional[ConversionJob]:
        raise NotImplementedError

    def _mutate(self, jobId: int, fn: Mutator) -> ConversionJob:
        raise NotImplementedError

    def _latest_for_subject(self, subjectRef: str) -> Optional[int]:
        raise NotImplementedError

    def _pending_ids(self, limit: int) -> List[int]:
        raise NotImplementedError

    def count_pending(self) -> int:
        raise NotImplementedError

    # -------------------------------------------------
    # CRUD
    # -------------------------------------------------
    def create(self, job: ConversionJob) -> int:
        if job.kind != self.kind:
            raise ValidationError(f"{job.kind.value} job cannot be stored in the {self.kind.value} store")
        if not job.subjectRef:
            raise ValidationError("subjectRef is required")

        now = utcnow()
        record = job.model_copy(deep=True, update={
            "id": self._next_id(),
            "status": JobStatus.PENDING,
            "derivedRef": "",
            "errorMessage": "",
            "revision": 0,
            "leaseToken": None,
            "leaseExpiresAt": None,
            "createdAt": now,
            "updatedAt": now,
        })
        self._insert(record)
        log.info("created %s job %s for subject %s", self.kind.value, record.id, record.subjectRef)
        return record.id

    def get(self, jobId: int) -> ConversionJob:
        job = self._load(jobId)
        if job is None:
            raise NotFound(f"{self.kind.value} job {jobId} not found")
        return job

    def find_by_subject(self, subjectRef: str) -> ConversionJob:
        jobId = self._latest_for_subject(subjectRef)
        if jobId is None:
            raise NotFound(f"no {self.kind.value} job for subject {subjectRef}")
        return self.get(jobId)

    def update(self, job: ConversionJob) -> ConversionJob:
        """Full-record replace. Callers re-read before updating."""

        def apply(current):
            if current.subjectRef != job.subjectRef:
                raise ValidationError(f"job {job.id}: subjectRef cannot be reassigned")
            updated = job.model_copy(deep=True, update={
                "kind": self.kind,
                "createdAt": current.createdAt,
                "updatedAt": utcnow(),
            })
            return enforce_invariants(updated)

        return self._mutate(job.id, apply)

    def list_pending(self, limit: int) -> List[ConversionJob]:
        if limit <= 0:
            return []
        jobs = []
        for jobId in self._pending_ids(limit):
            job = self._load(jobId)
            if job is not None and job.status == JobStatus.PENDING:
                jobs.append(job)
        return jobs

    # -------------------------------------------------
    # Status transitions
    # -------------------------------------------------
    def update_status(
        self,
        jobId: int,
        status,
        derived_ref: str = "",
        error_message: str = "",
        lease: Optional[Lease] = None,
        **fields,
    ) -> ConversionJob:
        """
        Partial update: only non-empty values overwrite existing ones.
        """
        status = JobStatus(status)
        superseded = {}

        def apply(job):
            self._check_lease(job, lease)

            if self._superseded(job, lease):
                # Input replaced mid-flight; drop the result, keep pending
                superseded["revision"] = job.revision
                return _release_to_pending(job)

            changes = {"status": status, "updatedAt": utcnow()}
            if derived_ref:
                changes["derivedRef"] = derived_ref
            if error_message:
                changes["errorMessage"] = error_message
            for name, value in fields.items():
                if name in _PROTECTED_FIELDS:
                    raise ValidationError(f"field {name} cannot be written through update_status")
                if not _is_empty(value):
                    changes[name] = value

            return enforce_invariants(job.model_copy(update=changes))

        job = self._mutate(jobId, apply)
        self._raise_if_superseded(jobId, superseded)
        return job

    def claim(self, jobId: int, lease_seconds: int) -> Optional[Lease]:
        """
        Compare-and-swap pending/error -> processing.

        Returns None when the job is already processed or another
        conversion holds a live lease.
        """
        now = utcnow()
        token = uuid.uuid4().hex
        claimed = {}

        def apply(job):
            if job.status == JobStatus.PROCESSED or job.lease_active(now):
                return None
            lease = Lease(
                jobId=job.id,
                token=token,
                revision=job.revision,
                expiresAt=now + timedelta(seconds=lease_seconds),
            )
            claimed["lease"] = lease
            return job.model_copy(update={
                "status": JobStatus.PROCESSING,
                "leaseToken": token,
                "leaseExpiresAt": lease.expiresAt,
                "updatedAt": now,
            })

        self._mutate(jobId, apply)
        return claimed.get("lease")

    def patch(self, jobId: int, lease: Optional[Lease] = None, **fields) -> ConversionJob:
        superseded = {}

        def apply(job):
            self._check_lease(job, lease)
            if self._superseded(job, lease):
                superseded["revision"] = job.revision
                return _release_to_pending(job)

            changes = {}
            for name, value in fields.items():
                if name in _PROTECTED_FIELDS:
                    raise ValidationError(f"field {name} cannot be patched")
                if not _is_empty(value):
                    changes[name] = value
            if not changes:
                return None
            changes["updatedAt"] = utcnow()
            return job.model_copy(update=changes)

        job = self._mutate(jobId, apply)
        self._raise_if_superseded(jobId, superseded)
        return job

    def reject_without_input(self, jobId: int, message: str) -> Optional[ConversionJob]:
        """
        Marks an unclaimed job with neither inline content nor a stored
        input as error, without passing through processing.

        Returns the failed job, or None when the job has input or is
        already processed or leased.
        """
        rejected = {}

        def apply(job):
            if job.status == JobStatus.PROCESSED or job.lease_active():
                return None
            if job.inputContent or job.inputRef:
                return None
            rejected["status"] = job.status.value
            return enforce_invariants(job.model_copy(update={
                "status": JobStatus.ERROR,
                "errorMessage": message,
                "updatedAt": utcnow(),
            }))

        job = self._mutate(jobId, apply)
        if rejected:
            log.info("%s job %s has no input; %s -> error", self.kind.value, jobId, rejected["status"])
            return job
        return None

    def replace_input(
        self,
        jobId: int,
        input_content: str = "",
        input_ref: str = "",
        file_name: str = "",
        original_name: str = "",
    ) -> ConversionJob:
        """Owning entity changed: new input, new revision, back to pending."""

        def apply(job):
            changes = {
                "inputContent": input_content,
                "inputRef": input_ref,
                "revision": job.revision + 1,
                "status": JobStatus.PENDING,
                "errorMessage": "",
                "updatedAt": utcnow(),
            }
            if file_name:
                changes["fileName"] = file_name
            if original_name:
                changes["originalName"] = original_name
            return job.model_copy(update=changes)

        job = self._mutate(jobId, apply)
        log.info("%s job %s input replaced (revision %s)", self.kind.value, jobId, job.revision)
        return job

    def _check_lease(self, job: ConversionJob, lease: Optional[Lease]):
        if lease is None:
            return
        if job.leaseToken != lease.token:
            raise LeaseLost(f"{self.kind.value} job {job.id}: lease no longer held")

    @staticmethod
    def _superseded(job: ConversionJob, lease: Optional[Lease]) -> bool:
        return lease is not None and job.revision != lease.revision

    def _raise_if_superseded(self, jobId: int, superseded: dict):
        if superseded:
            raise LeaseLost(
                f"{self.kind.value} job {jobId} input changed to revision {superseded['revision']}",
                superseded=True,
            )


# -------------------------------------------------
# In-memory store (LOCAL DEV / TESTS)
# -------------------------------------------------
class InMemoryJobRepo(BaseJobRepo):
    def __init__(self, kind):
        super().__init__(kind)
        self._jobs: Dict[int, ConversionJob] = {}
        self._seq = 0
        self._lock = threading.RLock()

    def _next_id(self) -> int:
        with self._lock:
            self._seq += 1
            return self._seq

    def _insert(self, job):
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    def _load(self, jobId):
        with self._lock:
            job = self._jobs.get(jobId)
            return job.model_copy(deep=True) if job else None

    def _mutate(self, jobId, fn):
        with self._lock:
            current = self._jobs.get(jobId)
            if current is None:
                raise NotFound(f"{self.kind.value} job {jobId} not found")
            updated = fn(current.model_copy(deep=True))
            if updated is None:
                return current.model_copy(deep=True)
            self._jobs[jobId] = updated.model_copy(deep=True)
            return updated

    def _latest_for_subject(self, subjectRef):
        with self._lock:
            matches = [j for j in self._jobs.values() if j.subjectRef == subjectRef]
        if not matches:
            return None
        return max(matches, key=lambda j: (j.createdAt, j.id)).id

    def _pending_ids(self, limit):
        with self._lock:
            pending = [j for j in self._jobs.values() if j.status == JobStatus.PENDING]
        pending.sort(key=lambda j: (j.createdAt, j.id))
        return [j.id for j in pending[:limit]]

    def count_pending(self) -> int:
        with self._lock:
            return sum(1 for j in self._jobs.values() if j.status == JobStatus.PENDING)


# -------------------------------------------------
# Redis-backed store (PRODUCTION)
# -------------------------------------------------
class RedisJobRepo(BaseJobRepo):
    """
    Keys (per kind):
      <prefix><kind>:seq              id sequence
      <prefix><kind>:job:<id>         JSON record
      <prefix><kind>:pending          zset of pending ids scored by createdAt
      <prefix><kind>:subject:<ref>    latest job id for a subject
    """

    def __init__(self, kind, client=None, prefix: str = config.REDIS_PREFIX):
        super().__init__(kind)
        if client is None:
            redis_url = config.REDIS_URL
            if not redis_url:
                raise RuntimeError("REDIS_URL is required for the redis job store")
            client = redis.from_url(redis_url, decode_responses=True)

        self.client = client
        self.prefix = f"{prefix}{self.kind.value}:"

    def _key(self, jobId) -> str:
        return f"{self.prefix}job:{jobId}"

    def _subject_key(self, subjectRef) -> str:
        return f"{self.prefix}subject:{subjectRef}"

    @property
    def _pending_key(self) -> str:
        return f"{self.prefix}pending"

    @contextmanager
    def _guard(self, action: str):
        try:
            yield
        except RedisError as e:
            log.error("job store %s failed: %s", action, e)
            raise PersistenceError(f"job store unavailable during {action}: {e}") from e

    def _index(self, pipe, job: ConversionJob):
        if job.status == JobStatus.PENDING:
            pipe.zadd(self._pending_key, {str(job.id): job.createdAt.timestamp()})
        else:
            pipe.zrem(self._pending_key, str(job.id))

    def _decode(self, raw) -> ConversionJob:
        return self.model.model_validate_json(raw)

    def _next_id(self) -> int:
        with self._guard("id allocation"):
            return int(self.client.incr(f"{self.prefix}seq"))

    def _insert(self, job):
        with self._guard("create"):
            pipe = self.client.pipeline()
            pipe.set(self._key(job.id), job.model_dump_json())
            self._index(pipe, job)
            pipe.set(self._subject_key(job.subjectRef), job.id)
            pipe.execute()

    def _load(self, jobId):
        with self._guard("read"):
            raw = self.client.get(self._key(jobId))
        return self._decode(raw) if raw else None

    def _mutate(self, jobId, fn):
        key = self._key(jobId)
        with self._guard("update"):
            with self.client.pipeline() as pipe:
                while True:
                    try:
                        pipe.watch(key)
                        raw = pipe.get(key)
                        if raw is None:
                            raise NotFound(f"{self.kind.value} job {jobId} not found")
                        current = self._decode(raw)
                        updated = fn(current.model_copy(deep=True))
                        if updated is None:
                            pipe.unwatch()
                            return current

                        pipe.multi()
                        pipe.set(key, updated.model_dump_json())
                        self._index(pipe, updated)
                        pipe.execute()
                        return updated
                    except WatchError:
                        # Concurrent writer touched the record; re-read
                        continue

    def _latest_for_subject(self, subjectRef):
        with self._guard("subject lookup"):
            raw = self.client.get(self._subject_key(subjectRef))
        return int(raw) if raw else None

    def _pending_ids(self, limit):
        with self._guard("pending listing"):
            ids = self.client.zrange(self._pending_key, 0, limit - 1)
        return [int(i) for i in ids]

    def count_pending(self) -> int:
        with self._guard("pending count"):
            return int(self.client.zcard(self._pending_key))


# -------------------------------------------------
# Factory
# -------------------------------------------------
def get_job_repo(kind):
    if config.JOB_STORE == "redis":
        return RedisJobRepo(kind)
    return InMemoryJobRepo(kind)
