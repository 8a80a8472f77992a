import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _load_dotenv(path: Path) -> None:
    if not path.exists():
        return
    for raw_line in path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        os.environ.setdefault(key, value)


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


_load_dotenv(BASE_DIR / ".env")

DEBUG = _env_bool("DEBUG", "False")

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY") or os.environ.get("SECRET_KEY", "change-me")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "mailmirror",
    "accounts",
    "mail",
]

# Database configuration using individual DB_* environment variables
if all(
    os.environ.get(key)
    for key in ["DB_HOST", "DB_NAME", "DB_USER", "DB_PASSWORD"]
):
    db_config = {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME"),
        "USER": os.environ.get("DB_USER"),
        "PASSWORD": os.environ.get("DB_PASSWORD"),
        "HOST": os.environ.get("DB_HOST"),
        "PORT": os.environ.get("DB_PORT", "5432"),
    }
    # Add SSL mode if specified (for psycopg2 compatibility)
    sslmode = os.environ.get("DB_SSLMODE")
    if sslmode:
        db_config["OPTIONS"] = {"sslmode": sslmode.lower()}
    DATABASES = {"default": db_config}
else:
    # Local development and the test suite
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.environ.get("SQLITE_PATH", str(BASE_DIR / "mailmirror.sqlite3")),
        }
    }

LANGUAGE_CODE = "en-us"

TIME_ZONE = "UTC"

USE_I18N = False

USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

CACHES = {
    "default": {
        "BACKEND": os.environ.get(
            "CACHE_BACKEND", "django.core.cache.backends.locmem.LocMemCache"
        ),
        "LOCATION": os.environ.get("CACHE_LOCATION", "mailmirror"),
    }
}

# Redis has no publisher confirms; send_task returning means the LPUSH succeeded
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get(
    "CELERY_RESULT_BACKEND", "redis://localhost:6379/0"
)
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_REJECT_ON_WORKER_LOST = True
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_TASK_SERIALIZER = "json"
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TIMEZONE = TIME_ZONE

# Google OAuth Configuration
GOOGLE_OAUTH_CLIENT_ID = os.environ.get("GOOGLE_OAUTH_CLIENT_ID", "")
GOOGLE_OAUTH_CLIENT_SECRET = os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET", "")

# Mailbox sync: page and batch sizes (Gmail list max is 500)
MAIL_SYNC_PAGE_SIZE = int(os.environ.get("MAIL_SYNC_PAGE_SIZE", "500"))
MAIL_SYNC_INITIAL_BATCH_SIZE = int(os.environ.get("MAIL_SYNC_INITIAL_BATCH_SIZE", "50"))
MAIL_SYNC_INCREMENTAL_BATCH_SIZE = int(
    os.environ.get("MAIL_SYNC_INCREMENTAL_BATCH_SIZE", "25")
)
MAIL_SYNC_HISTORY_MAX_PAGES = int(os.environ.get("MAIL_SYNC_HISTORY_MAX_PAGES", "20"))
# A non-terminal progress row older than this no longer blocks a new dispatch
MAIL_SYNC_STALE_PROGRESS_SECONDS = int(
    os.environ.get("MAIL_SYNC_STALE_PROGRESS_SECONDS", "3600")
)

# Per job kind queue policy. Keys not listed fall back to the mail.dispatch.JobPolicy defaults.
MAIL_SYNC_JOB_POLICIES = {
    "sync_labels": {
        "concurrency": 2,
        "rate_limit": "30/m",
        "max_retries": 5,
        "time_limit": 300,
    },
    "sync_initial": {
        "concurrency": 2,
        "rate_limit": "10/m",
        "max_retries": 5,
        "time_limit": 3600,
    },
    "sync_incremental": {
        "concurrency": 4,
        "rate_limit": "60/m",
        "max_retries": 5,
        "time_limit": 600,
    },
    "detail_batch": {
        "concurrency": 4,
        "rate_limit": "120/m",
        "max_retries": 8,
        "time_limit": 600,
    },
}

# Sync audit: log each page, batch and delta decision. Set to false in production to keep logs quiet.
MAIL_SYNC_AUDIT_LOGGING = _env_bool("MAIL_SYNC_AUDIT_LOGGING", "true")

# Logging Configuration
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {asctime} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
            "stream": "ext://sys.stdout",
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
            "stream": "ext://sys.stderr",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": os.environ.get("DJANGO_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
        "django.db.backends": {
            "handlers": ["console"],
            "level": os.environ.get("DB_LOG_LEVEL", "WARNING"),  # Set to DEBUG to see SQL queries
            "propagate": False,
        },
        # Application loggers
        "accounts": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "mail": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "mail.sync_audit": {
            "handlers": ["console"],
            "level": "INFO" if MAIL_SYNC_AUDIT_LOGGING else "WARNING",
            "propagate": False,
        },
        "mailmirror": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        # Third-party loggers
        "celery": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "googleapiclient": {
            "handlers": ["error_console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}
