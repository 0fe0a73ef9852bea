# sketchshift/dependencies.py
from functools import lru_cache

from sketchshift import config
from sketchshift.repos.jobs import get_job_repo
from sketchshift.schemas.job import JobKind
from sketchshift.services.conversion import ConversionClient, ConversionInvoker
from sketchshift.services.retry import RetrySupervisor
from sketchshift.services.storage import LocalFileStore, build_default_gateway
from sketchshift.services.submissions import SubmissionService


@lru_cache(maxsize=None)
def get_job_repos():
    return {kind: get_job_repo(kind) for kind in JobKind}


@lru_cache(maxsize=None)
def get_storage_gateway():
    return build_default_gateway()


@lru_cache(maxsize=None)
def get_preview_store():
    return LocalFileStore()


@lru_cache(maxsize=None)
def get_invoker() -> ConversionInvoker:
    return ConversionInvoker(
        repos=get_job_repos(),
        client=ConversionClient(),
        storage=get_storage_gateway(),
    )


@lru_cache(maxsize=None)
def get_supervisor() -> RetrySupervisor:
    remote_submit = None
    remote_cleanup = None

    if config.USE_CELERY:
        from sketchshift.workers.conversion_tasks import cleanup_artifact, retry_conversion

        def remote_submit(kind, jobId):
            retry_conversion.delay(kind=kind, jobId=jobId)

        def remote_cleanup(url, delay):
            cleanup_artifact.apply_async(kwargs={"url": url}, countdown=delay)

    return RetrySupervisor(
        runner=get_invoker().convert,
        storage=get_storage_gateway(),
        remote_submit=remote_submit,
        remote_cleanup=remote_cleanup,
    )


@lru_cache(maxsize=None)
def get_submission_service() -> SubmissionService:
    return SubmissionService(
        invoker=get_invoker(),
        storage=get_storage_gateway(),
        supervisor=get_supervisor(),
        preview_store=get_preview_store(),
    )
