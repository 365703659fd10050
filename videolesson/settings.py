from pathlib import Path
import os
from celery.schedules import crontab
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
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        raise ImproperlyConfigured(f"Environment variable {name} must be an integer")

# -----------------------------------------------------
# Paths & basics
# -----------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

DEBUG = env_bool("DEBUG", False)

# In production (DEBUG=False) you must set a strong secret in .env
SECRET_KEY = env("DJANGO_SECRET_KEY", "dev-only-secret-key-change-me", required=not DEBUG)

ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "127.0.0.1,localhost").split(",") if h.strip()]

# -----------------------------------------------------
# Applications
# -----------------------------------------------------
INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.staticfiles",

    # Third-party
    "rest_framework",

    # Local
    "conversions",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "videolesson.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
            ],
        },
    },
]

# -----------------------------------------------------
# Database (Postgres if DB_* env vars set, else SQLite)
# -----------------------------------------------------
if os.getenv("DB_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": env("DB_NAME", "videolesson"),
            "USER": env("DB_USER", "videolesson"),
            "PASSWORD": env("DB_PASSWORD", ""),
            "HOST": env("DB_HOST", "127.0.0.1"),
            "PORT": env("DB_PORT", "5432"),
            "CONN_MAX_AGE": int(env("DB_CONN_MAX_AGE", "60")),  # keep-alive
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
# Cache (holds the output bucket prefix listing)
# -----------------------------------------------------
if os.getenv("CACHE_URL"):
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.redis.RedisCache",
            "LOCATION": os.getenv("CACHE_URL"),
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        }
    }

# -----------------------------------------------------
# Internationalization
# -----------------------------------------------------
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# -----------------------------------------------------
# Static & Media
# -----------------------------------------------------
STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

MEDIA_URL = "/media/"
MEDIA_ROOT = BASE_DIR / "media"

# -----------------------------------------------------
# Django REST Framework
# -----------------------------------------------------
REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
        "rest_framework.renderers.BrowsableAPIRenderer" if DEBUG else "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_PARSER_CLASSES": [
        "rest_framework.parsers.JSONParser",
        "rest_framework.parsers.FormParser",
        "rest_framework.parsers.MultiPartParser",
    ],
    "UNAUTHENTICATED_USER": None,
}

# -----------------------------------------------------
# Logging
# -----------------------------------------------------
LOG_LEVEL = env("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "loggers": {
        "conversions": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
}

# -----------------------------------------------------
# Email (error log digests)
# -----------------------------------------------------
EMAIL_BACKEND = env("EMAIL_BACKEND", "django.core.mail.backends.smtp.EmailBackend")
DEFAULT_FROM_EMAIL = env("DEFAULT_FROM_EMAIL", "videolesson@localhost")
ERROR_LOG_RECIPIENTS = [
    r.strip() for r in os.getenv("ERROR_LOG_RECIPIENTS", "").split(",") if r.strip()
]

# -----------------------------------------------------
# Celery / Redis
# -----------------------------------------------------
CELERY_BROKER_URL = env("CELERY_BROKER_URL", "redis://127.0.0.1:6379/0")
CELERY_RESULT_BACKEND = env("CELERY_RESULT_BACKEND", "redis://127.0.0.1:6379/0")
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = int(env("CELERY_TASK_TIME_LIMIT", str(60 * 15)))  # seconds

CELERY_BEAT_SCHEDULE = {
    "submit-conversions": {
        "task": "conversions.tasks.submit_conversions",
        "schedule": 60.0,
    },
    "process-conversions": {
        "task": "conversions.tasks.process_conversions",
        "schedule": 60.0,
    },
    "delete-input-files": {
        "task": "conversions.tasks.delete_input_files",
        "schedule": crontab(minute=15),
    },
    "poll-stale-conversions": {
        "task": "conversions.tasks.poll_stale_conversions",
        "schedule": crontab(minute=30, hour=2),
    },
    "send-error-log": {
        "task": "conversions.tasks.send_error_log",
        "schedule": crontab(minute=0, hour=6),
    },
}

# -----------------------------------------------------
# Default PK type
# -----------------------------------------------------
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# -----------------------------------------------------
# AWS (env-driven; no hardcoded secrets)
# -----------------------------------------------------
# "sdk" talks to AWS directly, "hosted" goes through the signed-URL broker.
HOSTING_TYPE = env("HOSTING_TYPE", "sdk")
if HOSTING_TYPE not in ("sdk", "hosted"):
    raise ImproperlyConfigured("HOSTING_TYPE must be 'sdk' or 'hosted'")

S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL") or None  # None means real AWS
S3_REGION = os.getenv("S3_REGION", "us-east-1")
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY")
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY")
S3_INPUT_BUCKET = os.getenv("S3_INPUT_BUCKET", "videolesson-input")
S3_OUTPUT_BUCKET = os.getenv("S3_OUTPUT_BUCKET", "videolesson-output")
BUCKET_KEY = os.getenv("BUCKET_KEY") or "videolesson"

DYNAMODB_TABLE_NAME = os.getenv("DYNAMODB_TABLE_NAME", "")
SQS_QUEUE_URL = os.getenv("SQS_QUEUE_URL", "")
SNS_TOPIC_ARN = os.getenv("SNS_TOPIC_ARN", "")

HOSTED_API_URL = os.getenv("HOSTED_API_URL", "")
LICENSE_KEY = os.getenv("LICENSE_KEY", "")
HOSTED_API_TIMEOUT = env_int("HOSTED_API_TIMEOUT", 30)

SITE_IDENTIFIER = env("SITE_IDENTIFIER", "videolesson-dev")
SITE_URL = env("SITE_URL", "http://127.0.0.1:8000")
PLUGIN_VERSION = env("PLUGIN_VERSION", "2026011900")

# -----------------------------------------------------
# Conversion engine
# -----------------------------------------------------
CONVERSION_MAX_FILES = env_int("CONVERSION_MAX_FILES", 1000)
QUEUE_MAX_MESSAGES = env_int("QUEUE_MAX_MESSAGES", 100)
CONVERSION_TIMEOUT = env_int("CONVERSION_TIMEOUT", 60 * 60 * 24)
CONVERSION_STATUS_TIMEOUT = env_int("CONVERSION_STATUS_TIMEOUT", 60 * 60 * 24)
STALE_CONVERSION_AGE = env_int("STALE_CONVERSION_AGE", 60 * 60 * 24 * 7)
QUEUE_FALLBACK = env_bool("QUEUE_FALLBACK", True)
PREFIX_CACHE_TIMEOUT = env_int("PREFIX_CACHE_TIMEOUT", 60 * 60)

SUBTITLE_DEFAULT_LANGUAGE = env("SUBTITLE_DEFAULT_LANGUAGE", "en")
SUBTITLE_TIMEOUT = env_int("SUBTITLE_TIMEOUT", 60 * 60)
SUBTITLES_COUNT_FOR_COMPLETION = env_bool("SUBTITLES_COUNT_FOR_COMPLETION", True)
