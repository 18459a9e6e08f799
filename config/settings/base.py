"""
Base Django settings for the PRS on-premises backup service.
Common settings shared across all environments.
"""

import os
from pathlib import Path

# Build paths inside the project
BASE_DIR = Path(__file__).resolve().parent.parent.parent


def env_bool(name, default):
    """Read a boolean flag from the environment ("true"/"false", case-insensitive)."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def env_first(*names, default=None):
    """Return the first non-empty environment variable among ``names``."""
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


# Application definition
INSTALLED_APPS = [
    "django.contrib.contenttypes",
    # Local apps
    "apps.backups",
]

# Internationalization
LANGUAGE_CODE = "en"
TIME_ZONE = os.getenv("TZ", "UTC")
USE_I18N = False
USE_TZ = False

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# Database being protected by the backup pipeline
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.getenv("POSTGRES_DB", "prs_production"),
        "USER": os.getenv("POSTGRES_USER", "prs_user"),
        "PASSWORD": os.getenv("POSTGRES_PASSWORD", ""),
        "HOST": os.getenv("POSTGRES_HOST", "localhost"),
        "PORT": os.getenv("POSTGRES_PORT", "5432"),
    }
}

# Celery Configuration
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 6 * 60 * 60  # full dumps of large databases
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_WORKER_CONCURRENCY = 1

# Create logs directory if it doesn't exist
LOGS_DIR = BASE_DIR / "logs"
LOGS_DIR.mkdir(exist_ok=True)

# =============================================================================
# Backup & Disaster Recovery
# =============================================================================

# Container running PostgreSQL; when set, pg_dump/pg_restore run via `docker exec`
POSTGRES_CONTAINER = os.getenv("POSTGRES_CONTAINER", "")

BACKUP_PREFIX = os.getenv("BACKUP_PREFIX", "prs")
BACKUP_LOCAL_ROOT = os.getenv("BACKUP_LOCAL_ROOT", os.getenv("STORAGE_HDD_PATH", "/mnt/hdd"))
BACKUP_FULL_DIR = os.getenv(
    "BACKUP_FULL_DIR", os.path.join(BACKUP_LOCAL_ROOT, "postgres-backups", "daily")
)
BACKUP_INCREMENTAL_DIR = os.getenv(
    "BACKUP_INCREMENTAL_DIR", os.path.join(BACKUP_LOCAL_ROOT, "postgres-backups", "incremental")
)
BACKUP_WAL_ARCHIVE_DIR = os.getenv(
    "BACKUP_WAL_ARCHIVE_DIR", os.path.join(BACKUP_LOCAL_ROOT, "wal-archive")
)
BACKUP_FULL_EXTENSION = os.getenv("BACKUP_FULL_EXTENSION", "sql")

BACKUP_MIN_FREE_BYTES = int(os.getenv("BACKUP_MIN_FREE_BYTES", str(5 * 1000**3)))
BACKUP_NAS_MIN_FREE_BYTES = int(os.getenv("BACKUP_NAS_MIN_FREE_BYTES", str(10 * 1000**3)))
BACKUP_MIN_ARTIFACT_BYTES = int(os.getenv("BACKUP_MIN_ARTIFACT_BYTES", str(1000**2)))
BACKUP_COMPRESSION_LEVEL = int(os.getenv("BACKUP_COMPRESSION_LEVEL", "9"))
BACKUP_GZIP_ARTIFACTS = env_bool("BACKUP_GZIP_ARTIFACTS", True)
BACKUP_ENCRYPTION_RECIPIENT = env_first("BACKUP_ENCRYPTION_RECIPIENT", "GPG_RECIPIENT", default="")

# NAS (off-site tier)
NAS_HOST = os.getenv("NAS_HOST", "")
BACKUP_TO_NAS = env_bool("BACKUP_TO_NAS", bool(NAS_HOST))
NAS_SHARE = os.getenv("NAS_SHARE", "backups")
NAS_USERNAME = os.getenv("NAS_USERNAME", "")
NAS_PASSWORD = os.getenv("NAS_PASSWORD", "")
NAS_MOUNT_PATH = os.getenv("NAS_MOUNT_PATH", "/mnt/nas")
NAS_DOMAIN = os.getenv("NAS_DOMAIN", "")
NAS_SMB_VERSION = os.getenv("NAS_SMB_VERSION", os.getenv("NAS_VERSION", ""))
NFS_OPTIONS = os.getenv("NFS_OPTIONS", "")
NAS_FILE_MODE = os.getenv("NAS_FILE_MODE", "0600")
NAS_DIR_MODE = os.getenv("NAS_DIR_MODE", "0700")

# Retention (days)
BACKUP_RETENTION_FULL_LOCAL_DAYS = int(
    env_first("BACKUP_RETENTION_FULL_LOCAL_DAYS", "LOCAL_RETENTION_DAYS", default="30")
)
BACKUP_RETENTION_INCREMENTAL_LOCAL_DAYS = int(
    os.getenv("BACKUP_RETENTION_INCREMENTAL_LOCAL_DAYS", "7")
)
BACKUP_RETENTION_WAL_LOCAL_DAYS = int(os.getenv("BACKUP_RETENTION_WAL_LOCAL_DAYS", "7"))
BACKUP_RETENTION_NAS_DAYS = int(
    env_first("BACKUP_RETENTION_NAS_DAYS", "NAS_RETENTION_DAYS", default="90")
)
BACKUP_REPLICATE_BEFORE_EXPIRE = [
    item.strip()
    for item in os.getenv("BACKUP_REPLICATE_BEFORE_EXPIRE", "full,incremental").split(",")
    if item.strip()
]

# Verification, polling and retry budgets
BACKUP_VERIFY_WINDOW_DAYS = int(os.getenv("BACKUP_VERIFY_WINDOW_DAYS", "7"))
BACKUP_READY_TIMEOUT = float(os.getenv("BACKUP_READY_TIMEOUT", "60"))
BACKUP_READY_POLL_INTERVAL = float(os.getenv("BACKUP_READY_POLL_INTERVAL", "2"))
BACKUP_NETWORK_RETRIES = int(os.getenv("BACKUP_NETWORK_RETRIES", "3"))
BACKUP_NETWORK_RETRY_DELAY = float(os.getenv("BACKUP_NETWORK_RETRY_DELAY", "5"))
BACKUP_NAS_PROBE_TIMEOUT = float(os.getenv("BACKUP_NAS_PROBE_TIMEOUT", "5"))
BACKUP_COMMAND_TIMEOUT = int(os.getenv("BACKUP_COMMAND_TIMEOUT", str(3 * 60 * 60)))

BACKUP_LOCK_FILE = os.getenv("BACKUP_LOCK_FILE", "/var/run/prs-backup.lock")
BACKUP_RECOVERY_ROOT = os.getenv("BACKUP_RECOVERY_ROOT", "/tmp")

# Notifications
BACKUP_ADMIN_EMAIL = env_first("BACKUP_ADMIN_EMAIL", "ADMIN_EMAIL", default="")
BACKUP_ALERT_WEBHOOK_URL = os.getenv("BACKUP_ALERT_WEBHOOK_URL", "")
BACKUP_NOTIFY_ON_SUCCESS = env_bool("BACKUP_NOTIFY_ON_SUCCESS", True)
DEFAULT_FROM_EMAIL = os.getenv("DEFAULT_FROM_EMAIL", "prs-backup@localhost")

BACKUP_LOG_FILE = os.getenv("BACKUP_LOG_FILE", str(LOGS_DIR / "prs-backup.log"))


def validate_required_env_vars():
    """
    Validate that all required environment variables are set.
    This function should be called at the end of each environment-specific settings file.
    """
    required_vars = {
        "DJANGO_SECRET_KEY": "Django secret key for cryptographic signing",
        "POSTGRES_DB": "PostgreSQL database name",
        "POSTGRES_USER": "PostgreSQL username",
        "POSTGRES_PASSWORD": "PostgreSQL password",
        "POSTGRES_HOST": "PostgreSQL host",
    }

    missing_vars = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing_vars.append(f"{var} ({description})")

    if BACKUP_TO_NAS and not NAS_HOST:
        missing_vars.append("NAS_HOST (required when BACKUP_TO_NAS is true)")

    if missing_vars:
        error_msg = (
            "Missing required environment variables:\n"
            + "\n".join(f"  - {var}" for var in missing_vars)
            + "\n\nPlease set these variables in your .env file or environment."
        )
        raise ValueError(error_msg)
