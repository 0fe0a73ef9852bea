# sketchshift/services/retry.py

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional, Set, Tuple

from sketchshift import config
from sketchshift.schemas.job import JobKind

log = logging.getLogger(__name__)

JobKey = Tuple[JobKind, int]


class RetrySupervisor:
    """
    Out-of-band retries decoupled from the request that failed.

    Local mode runs retries on a bounded thread pool and keeps track of
    what is queued or running, so the same job is never retried twice
    at once and a full queue pushes back instead of growing.

    When `remote_submit` is given (Celery), retries are handed to the
    worker fleet instead; the job store lease keeps them exclusive.
    """

    def __init__(
        self,
        runner: Callable,
        max_workers: int = config.RETRY_WORKERS,
        max_pending: int = config.RETRY_MAX_PENDING,
        storage=None,
        remote_submit: Optional[Callable] = None,
        remote_cleanup: Optional[Callable] = None,
    ):
        self.runner = runner
        self.max_pending = max_pending
        self.storage = storage
        self.remote_submit = remote_submit
        self.remote_cleanup = remote_cleanup

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="retry")
        self._lock = threading.Lock()
        self._in_flight: Set[JobKey] = set()
        self._timers: Dict[str, threading.Timer] = {}
        self._closed = False

    # -------------------------
    # Retries
    # -------------------------
    def submit(self, kind, jobId: int) -> bool:
        kind = JobKind(kind)

        if self.remote_submit is not None:
            self.remote_submit(kind.value, jobId)
            log.info("retry of %s job %s handed to worker queue", kind.value, jobId)
            return True

        key = (kind, jobId)
        with self._lock:
            if self._closed:
                log.warning("retry supervisor closed; dropping retry of %s job %s", kind.value, jobId)
                return False
            if key in self._in_flight:
                log.info("retry of %s job %s already in flight", kind.value, jobId)
                return False
            if len(self._in_flight) >= self.max_pending:
                log.warning(
                    "retry queue full (%d); dropping retry of %s job %s",
                    self.max_pending, kind.value, jobId,
                )
                return False
            self._in_flight.add(key)
            try:
                self._executor.submit(self._run, key)
            except RuntimeError as e:
                self._in_flight.discard(key)
                log.warning("retry of %s job %s not scheduled: %s", kind.value, jobId, e)
                return False

        log.info("scheduled retry of %s job %s", kind.value, jobId)
        return True

    def _run(self, key: JobKey):
        kind, jobId = key
        try:
            outcome = self.runner(kind, jobId)
            if outcome.succeeded:
                log.info("retry of %s job %s succeeded", kind.value, jobId)
            else:
                log.warning(
                    "retry of %s job %s did not succeed (status=%s)",
                    kind.value, jobId, outcome.job.status.value,
                )
        except Exception:
            log.exception("retry of %s job %s crashed", kind.value, jobId)
        finally:
            with self._lock:
                self._in_flight.discard(key)

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def in_flight(self, kind, jobId: int) -> bool:
        with self._lock:
            return (JobKind(kind), jobId) in self._in_flight

    # -------------------------
    # Delayed artifact cleanup
    # -------------------------
    def schedule_cleanup(self, url: str, delay: float = config.PREVIEW_RETENTION_SECONDS) -> bool:
        if not url:
            return False

        if self.remote_cleanup is not None:
            self.remote_cleanup(url, delay)
            return True

        if self.storage is None:
            log.warning("no storage configured; cannot schedule cleanup of %s", url)
            return False

        with self._lock:
            if self._closed:
                return False
            previous = self._timers.pop(url, None)
            if previous is not None:
                previous.cancel()
            timer = threading.Timer(delay, self._cleanup, args=(url,))
            timer.daemon = True
            self._timers[url] = timer
        timer.start()
        return True

    def _cleanup(self, url: str):
        with self._lock:
            self._timers.pop(url, None)
        if self.storage.delete(url):
            log.info("removed expired artifact %s", url)

    def pending_cleanups(self) -> int:
        with self._lock:
            return len(self._timers)

    def shutdown(self, wait: bool = True):
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=wait)
