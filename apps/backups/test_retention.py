"""
Tests for retention enforcement.

This module tests that RetentionEnforcer:
- Deletes artifacts strictly older than their tier's TTL
- Never deletes young artifacts
- Copies a missing NAS replica before expiring the local artifact
- Keeps an expired local copy whose NAS replica is not confirmed
- Prunes the NAS tier only while it is mounted
- Cleans up stale temporary files
"""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from apps.backups.artifacts import BackupArtifact, list_artifacts
from apps.backups.retention import RetentionEnforcer
from apps.backups.storage import NasStorage, replicate_artifact

NOW = datetime(2024, 6, 15, 12, 0, 0)


def days_ago(days, hours=0):
    return NOW - timedelta(days=days, hours=hours)


@pytest.fixture
def mounted_nas(nas_config, mount_session_factory):
    session = mount_session_factory(nas_config.nas)
    session.acquire()
    return NasStorage(session)


class TestLocalRetention:
    def test_expired_full_backups_deleted(self, backup_config, make_artifact):
        old = make_artifact(backup_config.full_dir, "full", days_ago(35))
        recent = make_artifact(backup_config.full_dir, "full", days_ago(5))

        report = RetentionEnforcer(backup_config, now=lambda: NOW).run()

        assert not old.exists()
        assert not old.with_name(old.name + ".sha256").exists()
        assert recent.exists()
        assert report.deleted["full_local"] == 1
        assert report.freed_bytes > 0

    def test_age_equal_to_ttl_is_kept(self, backup_config, make_artifact):
        boundary = make_artifact(backup_config.full_dir, "full", days_ago(30))

        report = RetentionEnforcer(backup_config, now=lambda: NOW).run()

        assert boundary.exists()
        assert report.total_deleted == 0

    def test_incremental_ttl(self, backup_config, make_artifact):
        old = make_artifact(backup_config.incremental_dir, "incremental", days_ago(8))
        young = make_artifact(backup_config.incremental_dir, "incremental", days_ago(6))

        RetentionEnforcer(backup_config, now=lambda: NOW).run()

        assert not old.exists()
        assert young.exists()

    def test_expired_wal_segments_deleted(self, backup_config, touch):
        backup_config.wal_archive_dir.mkdir(parents=True)
        old = backup_config.wal_archive_dir / "000000010000000000000001"
        new = backup_config.wal_archive_dir / "000000010000000000000002"
        for path, when in ((old, days_ago(10)), (new, days_ago(1))):
            path.write_bytes(b"\0" * 16)
            touch(path, when)

        report = RetentionEnforcer(backup_config, now=lambda: NOW).run()

        assert not old.exists()
        assert new.exists()
        assert report.deleted["wal_local"] == 1

    def test_stale_partial_files_removed(self, backup_config, touch):
        backup_config.full_dir.mkdir(parents=True)
        stale = backup_config.full_dir / "prs_full_backup_20240601_020000.sql.partial"
        fresh = backup_config.full_dir / "prs_full_backup_20240615_020000.sql.partial"
        stale.write_bytes(b"x")
        fresh.write_bytes(b"x")
        touch(stale, days_ago(3))
        touch(fresh, days_ago(0, hours=2))

        report = RetentionEnforcer(backup_config, now=lambda: NOW).run()

        assert not stale.exists()
        assert fresh.exists()
        assert report.deleted["partial_files"] == 1

    def test_nas_disabled_deletes_local_without_replica(self, backup_config, make_artifact):
        old = make_artifact(backup_config.full_dir, "full", days_ago(40))

        report = RetentionEnforcer(backup_config, now=lambda: NOW).run()

        assert not old.exists()
        assert report.kept_unreplicated == []
        assert "full_nas" in report.skipped


class TestReplicaGuard:
    def test_unreplicated_sole_copy_kept(self, nas_config, mounted_nas, make_artifact):
        old = make_artifact(nas_config.full_dir, "full", days_ago(40))

        with patch.object(NasStorage, "upload", return_value=False) as mock_upload:
            report = RetentionEnforcer(nas_config, mounted_nas, now=lambda: NOW).run()

        assert mock_upload.call_count == nas_config.network_retries
        assert old.exists()
        assert report.kept_unreplicated == [old.name]

    def test_missing_replica_copied_before_local_delete(self, nas_config, mounted_nas, make_artifact):
        old = make_artifact(nas_config.full_dir, "full", days_ago(40))

        report = RetentionEnforcer(nas_config, mounted_nas, now=lambda: NOW).run()

        replicas = list_artifacts(nas_config.nas.directory_for("full"), "prs", "full")
        assert [r.name for r in replicas] == [old.name]
        assert not old.exists()
        assert report.kept_unreplicated == []
        assert report.deleted["full_local"] == 1

    def test_copy_past_nas_ttl_not_replicated(self, nas_config, mounted_nas, make_artifact):
        old = make_artifact(nas_config.full_dir, "full", days_ago(95))

        report = RetentionEnforcer(nas_config, mounted_nas, now=lambda: NOW).run()

        assert list_artifacts(nas_config.nas.directory_for("full"), "prs", "full") == []
        assert old.exists()
        assert report.kept_unreplicated == [old.name]

    def test_unmounted_nas_keeps_sole_copy(self, nas_config, mount_session_factory, make_artifact):
        old = make_artifact(nas_config.full_dir, "full", days_ago(40))
        session = mount_session_factory(nas_config.nas, reachable=False)
        session.acquire()

        report = RetentionEnforcer(nas_config, NasStorage(session), now=lambda: NOW).run()

        assert old.exists()
        assert report.kept_unreplicated == [old.name]
        assert "full_nas" in report.skipped

    def test_replicated_copy_deleted_locally(self, nas_config, mounted_nas, make_artifact):
        old = make_artifact(nas_config.full_dir, "full", days_ago(40))
        replica = replicate_artifact(BackupArtifact.from_path(old), mounted_nas, retries=1)

        report = RetentionEnforcer(nas_config, mounted_nas, now=lambda: NOW).run()

        assert not old.exists()
        assert replica.path.exists()
        assert report.deleted["full_local"] == 1
        assert report.deleted["full_nas"] == 0


class TestNasRetention:
    def test_expired_nas_copies_deleted(self, nas_config, mounted_nas, make_artifact):
        nas_dir = nas_config.nas.directory_for("full")
        ancient = make_artifact(nas_dir, "full", days_ago(95))
        kept = make_artifact(nas_dir, "full", days_ago(60))

        report = RetentionEnforcer(nas_config, mounted_nas, now=lambda: NOW).run()

        assert not ancient.exists()
        assert kept.exists()
        assert report.deleted["full_nas"] == 1

    def test_one_category_failure_does_not_stop_others(self, backup_config, make_artifact):
        old_full = make_artifact(backup_config.full_dir, "full", days_ago(40))
        old_incremental = make_artifact(backup_config.incremental_dir, "incremental", days_ago(10))
        enforcer = RetentionEnforcer(backup_config, now=lambda: NOW)

        with patch.object(enforcer, "expire_wal", side_effect=OSError("permission denied")):
            report = enforcer.run()

        assert "wal_local" in report.errors
        assert not old_full.exists()
        assert not old_incremental.exists()

    def test_usage_reported(self, backup_config, make_artifact):
        make_artifact(backup_config.full_dir, "full", days_ago(1), size=4096)

        report = RetentionEnforcer(backup_config, now=lambda: NOW).run()

        assert report.usage["full"]["files"] == 2
        assert report.usage["full"]["bytes"] > 4096
        assert report.as_dict()["total_deleted"] == 0


class TestRetentionPolicy:
    def test_young_artifacts_never_deleted(self, nas_config, mounted_nas, make_artifact):
        for day in range(0, 30):
            make_artifact(nas_config.full_dir, "full", days_ago(day, hours=1))

        RetentionEnforcer(nas_config, mounted_nas, now=lambda: NOW).run()

        assert len(list_artifacts(nas_config.full_dir, "prs", "full")) == 30
