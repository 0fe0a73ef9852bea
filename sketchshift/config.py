import logging
import os
from dotenv import load_dotenv

load_dotenv()

# --------------------------------------------------
# App
# --------------------------------------------------
APP_NAME = "SketchShift Conversion API"
API_PREFIX = "/v1"

ENV = os.getenv("ENV", "local")  # local | production
IS_PROD = ENV == "production"

# --------------------------------------------------
# Feature Flags
# --------------------------------------------------
USE_CELERY = os.getenv("USE_CELERY", "false").lower() == "true"

# redis | memory (defaults follow USE_CELERY)
JOB_STORE = os.getenv("JOB_STORE", "redis" if USE_CELERY else "memory")

# --------------------------------------------------
# Conversion function
# --------------------------------------------------
PDE_CONVERSION_URL = os.getenv("PDE_CONVERSION_URL", "")
IMAGE_CONVERSION_URL = os.getenv("IMAGE_CONVERSION_URL", "")
CONVERSION_TIMEOUT_SECONDS = float(os.getenv("CONVERSION_TIMEOUT_SECONDS", "60"))

if IS_PROD and not PDE_CONVERSION_URL:
    raise RuntimeError("PDE_CONVERSION_URL is required in production")

# --------------------------------------------------
# Object storage (Cloudflare worker in front of R2)
# --------------------------------------------------
STORAGE_WORKER_URL = os.getenv("CLOUDFLARE_WORKER_URL", "").rstrip("/")
STORAGE_API_KEY = os.getenv("CLOUDFLARE_API_KEY", "")
STORAGE_TIMEOUT_SECONDS = float(os.getenv("STORAGE_TIMEOUT_SECONDS", "30"))

if IS_PROD and not STORAGE_WORKER_URL:
    raise RuntimeError("CLOUDFLARE_WORKER_URL is required in production")

# --------------------------------------------------
# Local storage (fallback)
# --------------------------------------------------
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
UPLOAD_BASE_URL = "/uploads"
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "10"))
SKETCH_EXTENSIONS = {".pde"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}
PREVIEW_RETENTION_SECONDS = int(os.getenv("PREVIEW_RETENTION_SECONDS", "3600"))

# --------------------------------------------------
# Job store / Redis / Celery
# --------------------------------------------------
REDIS_URL = os.getenv("REDIS_URL")
REDIS_PREFIX = os.getenv("REDIS_PREFIX", "sketchshift:")
JOB_LEASE_SECONDS = int(os.getenv("JOB_LEASE_SECONDS", "180"))

if (USE_CELERY or JOB_STORE == "redis") and not REDIS_URL:
    raise RuntimeError("REDIS_URL is required when USE_CELERY=true or JOB_STORE=redis")

# --------------------------------------------------
# Retry supervisor
# --------------------------------------------------
RETRY_WORKERS = int(os.getenv("RETRY_WORKERS", "4"))
RETRY_MAX_PENDING = int(os.getenv("RETRY_MAX_PENDING", "100"))
MAX_SUPERSEDE = int(os.getenv("MAX_SUPERSEDE", "3"))

# --------------------------------------------------
# Batch dispatch (SQS)
# --------------------------------------------------
AWS_REGION = os.getenv("AWS_REGION", "ap-northeast-1")
BATCH_QUEUE_URL = os.getenv("BATCH_QUEUE_URL", "")
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "20"))
BATCH_THRESHOLD = int(os.getenv("BATCH_THRESHOLD", "100"))

# --------------------------------------------------
# Logging
# --------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = LOG_LEVEL):
    logging.basicConfig(level=level, format=LOG_FORMAT)
