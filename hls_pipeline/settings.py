from pathlib import Path
import os
from dotenv import load_dotenv
from django.core.exceptions import ImproperlyConfigured

# -----------------------------------------------------
# Helpers
# -----------------------------------------------------
def env(name: str, default=None, *, required: bool = False):
    val = os.getenv(name, default)
    if required and (val is None or (isinstance(val, str) and val.strip() == "")):
        raise ImproperlyConfigured(f"Missing required environment variable: {name}")
    return val

def env_bool(name: str, default: bool = False) -> bool:
    return str(os.getenv(name, str(default))).lower() in {"1", "true", "yes", "on"}

def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ImproperlyConfigured(f"Environment variable {name} must be an integer, got {raw!r}")

def env_list(name: str, default: str = "") -> list[str]:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]

# -----------------------------------------------------
# Paths & basics
# -----------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

DEBUG = env_bool("DEBUG", False)

# Worker-only deployment: nothing is signed, but Django still wants a key.
SECRET_KEY = env("DJANGO_SECRET_KEY", "dev-only-secret-key-change-me")

ALLOWED_HOSTS = env_list("ALLOWED_HOSTS", "127.0.0.1,localhost")

# -----------------------------------------------------
# Applications
# -----------------------------------------------------
INSTALLED_APPS = [
    # Third-party
    "rest_framework",

    # Local
    "transcoder",
]

# -----------------------------------------------------
# Database (Postgres if DB_* env vars set, else SQLite)
# -----------------------------------------------------
if os.getenv("DB_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": env("DB_NAME", "hls_pipeline"),
            "USER": env("DB_USER", "hls_user"),
            "PASSWORD": env("DB_PASSWORD", ""),
            "HOST": env("DB_HOST", "127.0.0.1"),
            "PORT": env("DB_PORT", "5432"),
            "CONN_MAX_AGE": env_int("DB_CONN_MAX_AGE", 60),  # keep-alive
            "OPTIONS": {
                **({"sslmode": os.getenv("DB_SSLMODE")} if os.getenv("DB_SSLMODE") else {})
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

# -----------------------------------------------------
# Internationalization
# -----------------------------------------------------
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

# -----------------------------------------------------
# Default PK type
# -----------------------------------------------------
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# -----------------------------------------------------
# Logging
# -----------------------------------------------------
LOG_LEVEL = env("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "worker": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "worker",
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "transcoder": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "botocore": {"level": "WARNING"},
        "boto3": {"level": "WARNING"},
    },
}

# -----------------------------------------------------
# Celery / Redis
# -----------------------------------------------------
CELERY_BROKER_URL = env("CELERY_BROKER_URL", "redis://127.0.0.1:6379/0")
CELERY_RESULT_BACKEND = env("CELERY_RESULT_BACKEND", "redis://127.0.0.1:6379/0")
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_SERIALIZER = "json"
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_DEFAULT_QUEUE = "transcode_queue"

# C: max jobs in flight per worker process
CELERY_WORKER_CONCURRENCY = env_int("WORKER_CONCURRENCY", 1)
CELERY_WORKER_PREFETCH_MULTIPLIER = 1

# Ack only after the pipeline reports; lost workers give the message back.
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_REJECT_ON_WORKER_LOST = True

# Broker-level lock. Must outlast FFMPEG_TIMEOUT and SANDBOX_TIMEOUT (checked
# below); the job-row lease is the renewable part.
QUEUE_VISIBILITY_TIMEOUT = env_int("QUEUE_VISIBILITY_TIMEOUT", 60 * 60 * 4)
CELERY_BROKER_TRANSPORT_OPTIONS = {"visibility_timeout": QUEUE_VISIBILITY_TIMEOUT}

CELERY_TASK_ALWAYS_EAGER = env_bool("CELERY_TASK_ALWAYS_EAGER", False)

# -----------------------------------------------------
# S3 / MinIO / R2 (env-driven; no hardcoded secrets)
# -----------------------------------------------------
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or "http://127.0.0.1:9000"  # fine for local
S3_PUBLIC_ENDPOINT = os.getenv("S3_PUBLIC_ENDPOINT", S3_ENDPOINT_URL)
S3_REGION = os.getenv("S3_REGION", "us-east-1")
S3_BUCKET = os.getenv("S3_BUCKET", "video-saas")
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY")          # set in .env for local
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY")          # set in .env for local
S3_PUBLIC_BASE_URL = (
    os.getenv("S3_PUBLIC_BASE_URL") or f"{S3_PUBLIC_ENDPOINT.rstrip('/')}/{S3_BUCKET}"
)

# -----------------------------------------------------
# Transcoding
# -----------------------------------------------------
FFMPEG_BIN = env("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = env("FFPROBE_BIN", "ffprobe")
FFMPEG_TIMEOUT = env_int("FFMPEG_TIMEOUT", 60 * 60 * 2)  # seconds

TRANSCODE_WORKSPACE_ROOT = Path(env("TRANSCODE_WORKSPACE_ROOT", str(BASE_DIR / "temp")))
HLS_SEGMENT_SECONDS = env_int("HLS_SEGMENT_SECONDS", 10)
HLS_KEY_PREFIX = env("HLS_KEY_PREFIX", "hls")

THUMBNAIL_WIDTH = env_int("THUMBNAIL_WIDTH", 640)
THUMBNAIL_REQUIRED = env_bool("THUMBNAIL_REQUIRED", True)
WAVEFORM_SIZE = env("WAVEFORM_SIZE", "1280x240")

# Minimum seconds between progress writes during the encode stage.
PROGRESS_MIN_INTERVAL = env_int("PROGRESS_MIN_INTERVAL", 5)

FAILED_WRITE_ATTEMPTS = env_int("FAILED_WRITE_ATTEMPTS", 3)
FAILED_WRITE_BACKOFF = float(env("FAILED_WRITE_BACKOFF", "1.0"))

# -----------------------------------------------------
# Job lease (heartbeat-renewed)
# -----------------------------------------------------
JOB_LEASE_SECONDS = env_int("JOB_LEASE_SECONDS", 300)

# -----------------------------------------------------
# Execution isolation
# -----------------------------------------------------
TRANSCODE_EXECUTION = env("TRANSCODE_EXECUTION", "inprocess")  # inprocess | sandbox
if TRANSCODE_EXECUTION not in {"inprocess", "sandbox"}:
    raise ImproperlyConfigured(
        f"TRANSCODE_EXECUTION must be 'inprocess' or 'sandbox', got {TRANSCODE_EXECUTION!r}"
    )

DOCKER_BIN = env("DOCKER_BIN", "docker")
SANDBOX_IMAGE = env("SANDBOX_IMAGE", "hls-pipeline-worker:latest")
SANDBOX_NETWORK = env("SANDBOX_NETWORK", "hls_network")
SANDBOX_TIMEOUT = env_int("SANDBOX_TIMEOUT", 60 * 60 * 3)
if QUEUE_VISIBILITY_TIMEOUT <= max(FFMPEG_TIMEOUT, SANDBOX_TIMEOUT):
    raise ImproperlyConfigured(
        "QUEUE_VISIBILITY_TIMEOUT must be longer than FFMPEG_TIMEOUT and SANDBOX_TIMEOUT"
    )
SANDBOX_PASSTHROUGH_ENV = env_list(
    "SANDBOX_PASSTHROUGH_ENV",
    "DB_HOST,DB_PORT,DB_NAME,DB_USER,DB_PASSWORD,DB_SSLMODE,"
    "S3_ENDPOINT_URL,S3_PUBLIC_ENDPOINT,S3_PUBLIC_BASE_URL,S3_REGION,S3_BUCKET,"
    "S3_ACCESS_KEY,S3_SECRET_KEY,LOG_LEVEL",
)
