import os
from typing import Optional

BACKEND_TOKEN = os.environ.get("BACKEND_TOKEN", "")
APP_DATA_DIR = os.environ.get("APP_DATA_DIR", os.path.join(os.getcwd(), "data"))
LOG_DIR = os.environ.get("LOG_DIR", os.path.join(APP_DATA_DIR, "logs"))
BACKEND_PORT = int(os.environ.get("BACKEND_PORT", "49671"))

DB_PATH = os.environ.get("DB_PATH", os.path.join(APP_DATA_DIR, "storyweaver.db"))

# Image provider
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")
GEMINI_BASE_URL = os.environ.get(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
)
GEMINI_IMAGE_MODEL = os.environ.get("GEMINI_IMAGE_MODEL", "gemini-3-pro-image-preview")
PROVIDER_TIMEOUT_SEC = float(os.environ.get("PROVIDER_TIMEOUT_SEC", "120"))
DEFAULT_STYLE = os.environ.get("DEFAULT_STYLE", "cel-shading")

# Durable queue worker
WORKER_POLL_INTERVAL_SEC = float(os.environ.get("WORKER_POLL_INTERVAL_SEC", "2.0"))
WORKER_BATCH_SIZE = int(os.environ.get("WORKER_BATCH_SIZE", "5"))
WORKER_MAX_CONCURRENT = int(os.environ.get("WORKER_MAX_CONCURRENT", "3"))
GENERATION_RETRY_LIMIT = int(os.environ.get("GENERATION_RETRY_LIMIT", "3"))
RETRY_BASE_DELAY_SEC = float(os.environ.get("RETRY_BASE_DELAY_SEC", "1.0"))


def _optional_int(name: str) -> Optional[int]:
    value = os.environ.get(name, "").strip()
    return int(value) if value else None


GENERATION_DISPATCH_ATTEMPTS = _optional_int("GENERATION_DISPATCH_ATTEMPTS")

# Retention
JOB_RETENTION_KEEP = int(os.environ.get("JOB_RETENTION_KEEP", "1000"))
JOB_CLEANUP_INTERVAL_SEC = float(os.environ.get("JOB_CLEANUP_INTERVAL_SEC", "3600"))

# Streaming batches
IMAGE_CONCURRENCY = max(1, int(os.environ.get("IMAGE_CONCURRENCY", "3")))
WAVE_COOLDOWN_SEC = float(os.environ.get("WAVE_COOLDOWN_SEC", "2.0"))


def ensure_dirs() -> None:
    os.makedirs(APP_DATA_DIR, exist_ok=True)
    os.makedirs(LOG_DIR, exist_ok=True)
    db_dir = os.path.dirname(DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
