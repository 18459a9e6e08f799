"""
Pytest configuration and fixtures for backup tests.

Nothing here touches a real database, NAS or GnuPG keyring: fixtures build a
BackupConfig rooted in ``tmp_path`` and tests patch the external tools.
"""

import os
import time
from datetime import datetime
from pathlib import Path

import pytest

from apps.backups.artifacts import build_filename, write_sidecar
from apps.backups.conf import BackupConfig, DatabaseParams, NasSettings, RetentionPolicy
from apps.backups.results import Degraded, Success

NOW = datetime(2024, 6, 15, 12, 0, 0)


class RecordingNotifier:
    """Notifier double that keeps every notification in memory."""

    def __init__(self):
        self.sent = []

    def notify(self, severity, message, details=None):
        self.sent.append((severity, message, details or {}))

    def info(self, message, details=None):
        self.notify("INFO", message, details)

    def warning(self, message, details=None):
        self.notify("WARNING", message, details)

    def error(self, message, details=None):
        self.notify("ERROR", message, details)

    def critical(self, message, details=None):
        self.notify("CRITICAL", message, details)

    def severities(self):
        return [severity for severity, _, _ in self.sent]


class FakeMountSession:
    """
    Mount session double backed by a plain directory.

    ``reachable=False`` makes acquire() degrade the way an unreachable NAS does.
    """

    def __init__(self, nas, reachable=True):
        self.nas = nas
        self.reachable = reachable
        self.state = "unmounted"
        self.last_error = None
        self.acquire_calls = 0
        self.release_calls = 0

    @property
    def mount_path(self):
        return self.nas.mount_path

    @property
    def is_mounted(self):
        return self.state == "mounted"

    def probe(self):
        return self.reachable

    def acquire(self):
        self.acquire_calls += 1
        if not self.reachable:
            self.state = "degraded"
            self.last_error = f"NAS host {self.nas.host} unreachable on port {self.nas.port}"
            return Degraded(self.last_error)
        self.nas.mount_path.mkdir(parents=True, exist_ok=True)
        self.state = "mounted"
        return Success(self.mount_path, message="NAS mounted")

    def release(self):
        self.release_calls += 1
        if self.state == "mounted":
            self.state = "unmounted"


def make_artifact_file(
    directory, artifact_class, timestamp, size=2048, prefix="prs", sidecar=True, extension=None, compressed=True
):
    """Create an artifact file (and its sidecar) named for ``timestamp``."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    if extension is None:
        extension = "sql" if artifact_class == "full" else "tar"
    path = directory / build_filename(prefix, artifact_class, timestamp, extension, compressed=compressed)
    path.write_bytes(os.urandom(size))
    if sidecar:
        write_sidecar(path)
    return path


def set_mtime(path, when: datetime):
    stamp = time.mktime(when.timetuple())
    os.utime(path, (stamp, stamp))


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def backup_config(tmp_path):
    """Local-only configuration rooted in a temporary directory."""
    return BackupConfig(
        database=DatabaseParams(name="prs_test", user="prs_user", password="secret", host="db.local"),
        full_dir=tmp_path / "postgres-backups" / "daily",
        incremental_dir=tmp_path / "postgres-backups" / "incremental",
        wal_archive_dir=tmp_path / "wal-archive",
        min_free_bytes=0,
        min_artifact_bytes=1024,
        nas=NasSettings(enabled=False, mount_path=tmp_path / "nas"),
        retention=RetentionPolicy(),
        ready_timeout=0,
        ready_poll_interval=0,
        network_retries=2,
        network_retry_delay=0,
        lock_file=tmp_path / "run" / "prs-backup.lock",
        recovery_root=tmp_path / "recovery",
    )


@pytest.fixture
def nas_config(backup_config, tmp_path):
    """Configuration with the NAS tier enabled (mounted through FakeMountSession)."""
    nas = NasSettings(
        enabled=True,
        host="nas.local",
        share="backups",
        username="backup",
        password="nas-secret",
        mount_path=tmp_path / "nas",
        min_free_bytes=0,
    )
    return backup_config.with_overrides(nas=nas)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_artifact():
    return make_artifact_file


@pytest.fixture
def touch():
    return set_mtime


@pytest.fixture
def mount_session_factory():
    """Factory building FakeMountSessions; ``reachable`` is passed through."""

    def factory(nas, reachable=True):
        return FakeMountSession(nas, reachable=reachable)

    return factory
