import logging

from sketchshift.dependencies import get_invoker, get_job_repos, get_storage_gateway
from sketchshift.schemas.job import JobKind
from sketchshift.services.batch import drain_pending, parse_batch_message
from sketchshift.workers.celery import celery

log = logging.getLogger(__name__)


# --------------------------------------------------
# Core logic (shared by Celery and direct calls)
# --------------------------------------------------
def _retry_logic(kind: str, jobId: int) -> dict:
    outcome = get_invoker().convert(kind, jobId)
    job = outcome.job

    if not outcome.succeeded and not outcome.skipped:
        log.warning("retry of %s job %s left it in %s: %s", kind, jobId, job.status.value, job.errorMessage)

    return {
        "jobId": job.id,
        "kind": job.kind.value,
        "status": job.status.value,
        "derivedRef": job.derivedRef,
        "error": job.errorMessage or None,
        "skipped": outcome.skipped,
    }


def _drain_logic(kind: str, batchSize: int) -> dict:
    repo = get_job_repos()[JobKind(kind)]
    outcomes = drain_pending(get_invoker(), repo, batchSize)
    return {
        "kind": kind,
        "attempted": len(outcomes),
        "processed": sum(1 for o in outcomes if o.succeeded),
        "failed": sum(1 for o in outcomes if not o.succeeded and not o.skipped),
    }


# --------------------------------------------------
# Celery / Local Task Wrappers
# --------------------------------------------------
@celery.task(bind=True, name="retry_conversion")
def retry_conversion(self, kind: str, jobId: int):
    """Single best-effort re-invocation of a failed conversion."""
    return _retry_logic(kind, jobId)


@celery.task(bind=True, name="drain_batch")
def drain_batch(self, kind: str = "image", batchSize: int = 20):
    return _drain_logic(kind, batchSize)


@celery.task(bind=True, name="handle_batch_message")
def handle_batch_message(self, body: str):
    """Consumes one batch_conversion queue message body."""
    message = parse_batch_message(body)
    return _drain_logic(message.kind, message.batchSize)


@celery.task(bind=True, name="cleanup_artifact")
def cleanup_artifact(self, url: str):
    return {"url": url, "deleted": get_storage_gateway().delete(url)}
