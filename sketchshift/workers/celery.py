from celery import Celery

from sketchshift import config

config.configure_logging()

# -------------------------------------------------
# LOCAL MODE (NO REDIS, NO WORKER)
# -------------------------------------------------
if not config.USE_CELERY:
    celery = Celery("sketchshift_local")

    celery.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
    )

# -------------------------------------------------
# PRODUCTION MODE (REDIS + WORKER)
# -------------------------------------------------
else:
    celery = Celery(
        "sketchshift_worker",
        broker=config.REDIS_URL,
        backend=config.REDIS_URL,
    )

    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        task_track_started=True,
        task_default_queue="conversion_queue",
        worker_prefetch_multiplier=1,
    )

# -------------------------------------------------
# FORCE task registration
# -------------------------------------------------
import sketchshift.workers.conversion_tasks  # noqa: F401,E402
