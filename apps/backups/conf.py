"""
Immutable configuration for the backup pipeline.

Every component receives a ``BackupConfig`` built once from Django settings at
process start; nothing below this module reads settings or the environment.
"""

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional, Tuple

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

FULL = "full"
INCREMENTAL = "incremental"
WAL = "wal"
ARTIFACT_CLASSES = (FULL, INCREMENTAL)

LOCAL = "local"
NAS = "nas"


@dataclass(frozen=True)
class DatabaseParams:
    """Connection parameters of the database being protected."""

    name: str
    user: str
    password: str = ""
    host: str = "localhost"
    port: str = "5432"
    container: str = ""

    def env(self) -> Dict[str, str]:
        """Environment for libpq tools (keeps the password off the command line)."""
        return {"PGPASSWORD": self.password} if self.password else {}


@dataclass(frozen=True)
class NasSettings:
    """Network share used as the off-site tier."""

    enabled: bool = False
    host: str = ""
    share: str = "backups"
    username: str = ""
    password: str = ""
    mount_path: Path = Path("/mnt/nas")
    domain: str = ""
    smb_version: str = ""
    nfs_options: str = ""
    file_mode: str = "0600"
    dir_mode: str = "0700"
    min_free_bytes: int = 10 * 1000**3

    @property
    def protocol(self) -> str:
        # Credentials imply an SMB share; otherwise the export is NFS.
        return "cifs" if self.username and self.password else "nfs"

    @property
    def port(self) -> int:
        return 445 if self.protocol == "cifs" else 2049

    @property
    def remote(self) -> str:
        if self.protocol == "cifs":
            return f"//{self.host}/{self.share}"
        return f"{self.host}:/{self.share}"

    def directory_for(self, artifact_class: str) -> Path:
        subdir = "daily" if artifact_class == FULL else artifact_class
        return self.mount_path / "postgres-backups" / subdir


@dataclass(frozen=True)
class RetentionPolicy:
    """Time-to-live in days per ``(class, tier)`` pair."""

    full_local_days: int = 30
    incremental_local_days: int = 7
    wal_local_days: int = 7
    nas_days: int = 90
    replicate_before_expire: Tuple[str, ...] = (FULL, INCREMENTAL)

    def ttl_days(self, artifact_class: str, tier: str) -> int:
        if tier == NAS:
            return self.nas_days
        return {
            FULL: self.full_local_days,
            INCREMENTAL: self.incremental_local_days,
            WAL: self.wal_local_days,
        }[artifact_class]

    def requires_replica(self, artifact_class: str) -> bool:
        return artifact_class in self.replicate_before_expire

    def validate(self):
        """
        Reject policies that would make the off-site tier shorter-lived than
        the local one, or that name unknown classes.
        """
        for name in ("full_local_days", "incremental_local_days", "wal_local_days", "nas_days"):
            if getattr(self, name) <= 0:
                raise ImproperlyConfigured(f"Retention {name} must be a positive number of days")

        for artifact_class in ARTIFACT_CLASSES:
            local_days = self.ttl_days(artifact_class, LOCAL)
            if self.nas_days < local_days:
                raise ImproperlyConfigured(
                    f"NAS retention ({self.nas_days} days) must be >= local retention for "
                    f"{artifact_class} backups ({local_days} days)"
                )

        unknown = set(self.replicate_before_expire) - set(ARTIFACT_CLASSES)
        if unknown:
            raise ImproperlyConfigured(
                f"Unknown backup classes in BACKUP_REPLICATE_BEFORE_EXPIRE: {', '.join(sorted(unknown))}"
            )


@dataclass(frozen=True)
class BackupConfig:
    """Everything a pipeline run needs, resolved once."""

    database: DatabaseParams
    full_dir: Path
    incremental_dir: Path
    wal_archive_dir: Path
    prefix: str = "prs"
    full_extension: str = "sql"
    gzip_artifacts: bool = True
    compression_level: int = 9
    encryption_recipient: str = ""
    min_free_bytes: int = 5 * 1000**3
    min_artifact_bytes: int = 1000**2
    nas: NasSettings = field(default_factory=NasSettings)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    verify_window_days: int = 7
    ready_timeout: float = 60.0
    ready_poll_interval: float = 2.0
    network_retries: int = 3
    network_retry_delay: float = 5.0
    nas_probe_timeout: float = 5.0
    command_timeout: int = 3 * 60 * 60
    lock_file: Path = Path("/var/run/prs-backup.lock")
    recovery_root: Path = Path("/tmp")
    admin_email: str = ""
    webhook_url: str = ""
    notify_on_success: bool = True

    def directory_for(self, artifact_class: str) -> Path:
        return self.full_dir if artifact_class == FULL else self.incremental_dir

    def with_overrides(self, **changes) -> "BackupConfig":
        return replace(self, **changes)


def _setting(name, default=None):
    return getattr(settings, name, default)


def get_backup_config(overrides: Optional[dict] = None) -> BackupConfig:
    """
    Build the pipeline configuration from Django settings.

    Args:
        overrides: Optional field overrides applied after reading settings

    Returns:
        A frozen BackupConfig

    Raises:
        ImproperlyConfigured: If the settings are inconsistent
    """
    db = settings.DATABASES["default"]
    database = DatabaseParams(
        name=db.get("NAME") or "",
        user=db.get("USER") or "",
        password=db.get("PASSWORD") or "",
        host=db.get("HOST") or "localhost",
        port=str(db.get("PORT") or "5432"),
        container=_setting("POSTGRES_CONTAINER", "") or "",
    )
    if not database.name:
        raise ImproperlyConfigured("DATABASES['default']['NAME'] must name the database to back up")

    nas = NasSettings(
        enabled=bool(_setting("BACKUP_TO_NAS", False)) and bool(_setting("NAS_HOST", "")),
        host=_setting("NAS_HOST", ""),
        share=_setting("NAS_SHARE", "backups"),
        username=_setting("NAS_USERNAME", ""),
        password=_setting("NAS_PASSWORD", ""),
        mount_path=Path(_setting("NAS_MOUNT_PATH", "/mnt/nas")),
        domain=_setting("NAS_DOMAIN", ""),
        smb_version=_setting("NAS_SMB_VERSION", ""),
        nfs_options=_setting("NFS_OPTIONS", ""),
        file_mode=_setting("NAS_FILE_MODE", "0600"),
        dir_mode=_setting("NAS_DIR_MODE", "0700"),
        min_free_bytes=int(_setting("BACKUP_NAS_MIN_FREE_BYTES", 10 * 1000**3)),
    )

    retention = RetentionPolicy(
        full_local_days=int(_setting("BACKUP_RETENTION_FULL_LOCAL_DAYS", 30)),
        incremental_local_days=int(_setting("BACKUP_RETENTION_INCREMENTAL_LOCAL_DAYS", 7)),
        wal_local_days=int(_setting("BACKUP_RETENTION_WAL_LOCAL_DAYS", 7)),
        nas_days=int(_setting("BACKUP_RETENTION_NAS_DAYS", 90)),
        replicate_before_expire=tuple(_setting("BACKUP_REPLICATE_BEFORE_EXPIRE", [FULL, INCREMENTAL])),
    )
    retention.validate()

    level = int(_setting("BACKUP_COMPRESSION_LEVEL", 9))
    if not 1 <= level <= 9:
        raise ImproperlyConfigured(f"BACKUP_COMPRESSION_LEVEL must be between 1 and 9, got {level}")

    local_root = Path(_setting("BACKUP_LOCAL_ROOT", "/mnt/hdd"))
    config = BackupConfig(
        database=database,
        full_dir=Path(_setting("BACKUP_FULL_DIR", local_root / "postgres-backups" / "daily")),
        incremental_dir=Path(
            _setting("BACKUP_INCREMENTAL_DIR", local_root / "postgres-backups" / "incremental")
        ),
        wal_archive_dir=Path(_setting("BACKUP_WAL_ARCHIVE_DIR", local_root / "wal-archive")),
        prefix=_setting("BACKUP_PREFIX", "prs"),
        full_extension=_setting("BACKUP_FULL_EXTENSION", "sql"),
        gzip_artifacts=bool(_setting("BACKUP_GZIP_ARTIFACTS", True)),
        compression_level=level,
        encryption_recipient=_setting("BACKUP_ENCRYPTION_RECIPIENT", "") or "",
        min_free_bytes=int(_setting("BACKUP_MIN_FREE_BYTES", 5 * 1000**3)),
        min_artifact_bytes=int(_setting("BACKUP_MIN_ARTIFACT_BYTES", 1000**2)),
        nas=nas,
        retention=retention,
        verify_window_days=int(_setting("BACKUP_VERIFY_WINDOW_DAYS", 7)),
        ready_timeout=float(_setting("BACKUP_READY_TIMEOUT", 60)),
        ready_poll_interval=float(_setting("BACKUP_READY_POLL_INTERVAL", 2)),
        network_retries=max(1, int(_setting("BACKUP_NETWORK_RETRIES", 3))),
        network_retry_delay=float(_setting("BACKUP_NETWORK_RETRY_DELAY", 5)),
        nas_probe_timeout=float(_setting("BACKUP_NAS_PROBE_TIMEOUT", 5)),
        command_timeout=int(_setting("BACKUP_COMMAND_TIMEOUT", 3 * 60 * 60)),
        lock_file=Path(_setting("BACKUP_LOCK_FILE", "/var/run/prs-backup.lock")),
        recovery_root=Path(_setting("BACKUP_RECOVERY_ROOT", "/tmp")),
        admin_email=_setting("BACKUP_ADMIN_EMAIL", "") or "",
        webhook_url=_setting("BACKUP_ALERT_WEBHOOK_URL", "") or "",
        notify_on_success=bool(_setting("BACKUP_NOTIFY_ON_SUCCESS", True)),
    )

    if overrides:
        config = config.with_overrides(**overrides)
    return config
