"""
Tests for the run coordinator.

These exercise whole runs end to end with the external tools mocked:
pg_dump writes random bytes, the NAS is a temporary directory behind a
mount session double and notifications are recorded in memory.
"""

import os
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import pytest

from apps.backups.artifacts import list_artifacts
from apps.backups.coordinator import RunCoordinator
from apps.backups.exceptions import CommandFailedError, DatabaseNotReadyError, IntegrityError

NOW = datetime(2024, 6, 15, 2, 0, 0)


def fake_pg_dump(cmd, timeout=None, env=None, stdin=None, stdout=None, check=True):
    if stdout is not None:
        stdout.write(os.urandom(4096))
    return Mock(returncode=0, stdout="", stderr="")


@pytest.fixture
def pg_dump():
    with patch("apps.backups.full_backup.wait_until_ready") as ready, patch(
        "apps.backups.database.run_command", side_effect=fake_pg_dump
    ) as run:
        yield {"ready": ready, "run": run}


@pytest.fixture
def coordinator_for(notifier, mount_session_factory):
    def build(config, reachable=True, now=NOW):
        sessions = []

        def session_factory(cfg):
            session = mount_session_factory(cfg.nas, reachable=reachable)
            sessions.append(session)
            return session

        coordinator = RunCoordinator(
            config=config, notifier=notifier, now=lambda: now, session_factory=session_factory
        )
        coordinator.sessions = sessions
        return coordinator

    return build


class TestFullBackupRun:
    def test_local_only_success(self, backup_config, coordinator_for, notifier, pg_dump):
        result = coordinator_for(backup_config).run_full_backup()

        assert result.status == "success"
        assert result.exit_code == 0
        assert result.message == "Full backup: Local backup completed"
        assert len(list_artifacts(backup_config.full_dir, "prs", "full")) == 1
        assert notifier.severities() == ["INFO"]
        assert not backup_config.lock_file.exists()

    def test_replicates_to_nas(self, nas_config, coordinator_for, notifier, pg_dump):
        coordinator = coordinator_for(nas_config)

        result = coordinator.run_full_backup()

        assert result.status == "success"
        assert result.message == "Full backup: Local and NAS backup completed"
        replicas = list_artifacts(nas_config.nas.directory_for("full"), "prs", "full")
        assert [r.name for r in replicas] == [result.value.name]
        assert coordinator.sessions[0].release_calls == 1

    def test_nas_unreachable_degrades_but_exits_zero(self, nas_config, coordinator_for, notifier, pg_dump):
        coordinator = coordinator_for(nas_config, reachable=False)

        result = coordinator.run_full_backup()

        assert result.is_degraded
        assert result.exit_code == 0
        assert len(list_artifacts(nas_config.full_dir, "prs", "full")) == 1
        assert "WARNING" in notifier.severities()
        assert "ERROR" not in notifier.severities()
        assert coordinator.sessions[0].release_calls == 1

    def test_database_not_ready_fails(self, backup_config, coordinator_for, notifier, pg_dump):
        pg_dump["ready"].side_effect = DatabaseNotReadyError("Database prs_test not ready after 60 seconds")

        result = coordinator_for(backup_config).run_full_backup()

        assert result.status == "failure"
        assert result.exit_code == 1
        assert isinstance(result.error, DatabaseNotReadyError)
        assert notifier.severities() == ["ERROR"]
        assert list_artifacts(backup_config.full_dir, "prs") == []
        assert not backup_config.lock_file.exists()

    def test_pg_dump_failure_fails(self, backup_config, coordinator_for, notifier, pg_dump):
        pg_dump["run"].side_effect = CommandFailedError(["pg_dump"], 1, "FATAL: role does not exist")

        result = coordinator_for(backup_config).run_full_backup()

        assert result.exit_code == 1
        assert "pg_dump" in result.message
        assert list(backup_config.full_dir.iterdir()) == []

    @patch("apps.backups.locking.pid_alive", return_value=True)
    def test_concurrent_run_rejected(self, mock_alive, backup_config, coordinator_for, notifier, pg_dump):
        backup_config.lock_file.parent.mkdir(parents=True)
        backup_config.lock_file.write_text("999999\n")

        result = coordinator_for(backup_config).run_full_backup()

        assert result.exit_code == 1
        assert "already running" in result.message
        assert backup_config.lock_file.read_text() == "999999\n"
        pg_dump["run"].assert_not_called()

    @patch("apps.backups.locking.pid_alive", return_value=False)
    def test_stale_lock_does_not_block(self, mock_alive, backup_config, coordinator_for, pg_dump):
        backup_config.lock_file.parent.mkdir(parents=True)
        backup_config.lock_file.write_text("999999\n")

        result = coordinator_for(backup_config).run_full_backup()

        assert result.exit_code == 0
        assert not backup_config.lock_file.exists()

    def test_unexpected_error_is_critical(self, backup_config, coordinator_for, notifier, pg_dump):
        pg_dump["ready"].side_effect = RuntimeError("boom")

        result = coordinator_for(backup_config).run_full_backup()

        assert result.exit_code == 1
        assert notifier.severities() == ["CRITICAL"]

    def test_retention_runs_after_backup(self, backup_config, coordinator_for, make_artifact, pg_dump):
        expired = make_artifact(backup_config.full_dir, "full", NOW - timedelta(days=45))

        result = coordinator_for(backup_config).run_full_backup()

        assert result.ok
        assert not expired.exists()


class TestIncrementalRun:
    def test_without_full_backup_runs_full(self, backup_config, coordinator_for, pg_dump):
        result = coordinator_for(backup_config).run_incremental_backup()

        assert result.ok
        assert result.message.startswith("No full backup found")
        assert len(list_artifacts(backup_config.full_dir, "prs", "full")) == 1
        assert list_artifacts(backup_config.incremental_dir, "prs") == []

    def test_no_new_segments(self, backup_config, coordinator_for, make_artifact):
        make_artifact(backup_config.full_dir, "full", NOW - timedelta(hours=1))

        result = coordinator_for(backup_config).run_incremental_backup()

        assert result.status == "success"
        assert result.value is None
        assert "No new WAL segments" in result.message

    def test_bundles_new_segments(self, backup_config, coordinator_for, make_artifact, touch):
        make_artifact(backup_config.full_dir, "full", NOW - timedelta(hours=6))
        backup_config.wal_archive_dir.mkdir(parents=True)
        segment = backup_config.wal_archive_dir / "000000010000000000000001"
        segment.write_bytes(b"\0" * 64)
        touch(segment, NOW - timedelta(hours=1))

        result = coordinator_for(backup_config).run_incremental_backup()

        assert result.status == "success"
        assert result.message == "Incremental backup: Local backup completed"
        assert result.value.artifact_class == "incremental"


class TestVerificationRun:
    @pytest.fixture(autouse=True)
    def db_calls(self):
        with patch("apps.backups.verification.list_databases", return_value=[]), patch(
            "apps.backups.verification.create_database"
        ), patch("apps.backups.verification.restore_dump"), patch("apps.backups.verification.drop_database"):
            yield

    def test_nothing_to_verify_is_degraded(self, backup_config, coordinator_for, notifier):
        result = coordinator_for(backup_config).run_verification()

        assert result.is_degraded
        assert result.exit_code == 0
        assert notifier.severities() == ["WARNING"]

    def test_all_verified(self, backup_config, coordinator_for, make_artifact):
        make_artifact(backup_config.full_dir, "full", NOW - timedelta(days=1), compressed=False)

        result = coordinator_for(backup_config).run_verification()

        assert result.status == "success"
        assert result.value["verified"] == 1

    def test_checksum_failure_fails_run(self, backup_config, coordinator_for, notifier, make_artifact):
        path = make_artifact(backup_config.full_dir, "full", NOW - timedelta(days=1), compressed=False)
        path.write_bytes(b"\0" * 4096)

        result = coordinator_for(backup_config).run_verification()

        assert result.exit_code == 1
        assert isinstance(result.error, IntegrityError)
        severity, message, _ = notifier.sent[0]
        assert severity == "ERROR"
        assert "checksum mismatch" in message


class TestCleanupRun:
    def test_cleanup(self, backup_config, coordinator_for, notifier, make_artifact):
        expired = make_artifact(backup_config.incremental_dir, "incremental", NOW - timedelta(days=9))

        result = coordinator_for(backup_config).run_cleanup()

        assert result.status == "success"
        assert result.message == "Backup cleanup completed: 1 files deleted"
        assert not expired.exists()

    def test_unreplicated_copies_reported(self, nas_config, coordinator_for, make_artifact):
        make_artifact(nas_config.full_dir, "full", NOW - timedelta(days=45))

        result = coordinator_for(nas_config, reachable=False).run_cleanup()

        assert result.is_degraded
        assert result.value["kept_unreplicated"]

    def test_unreachable_nas_cleanup_is_degraded(self, nas_config, coordinator_for, notifier, make_artifact):
        expired = make_artifact(nas_config.incremental_dir, "incremental", NOW - timedelta(days=9))

        result = coordinator_for(nas_config, reachable=False).run_cleanup()

        assert result.is_degraded
        assert result.exit_code == 0
        assert "NAS not mounted, full_nas cleanup skipped" in result.warnings
        assert "NAS not mounted, incremental_nas cleanup skipped" in result.warnings
        assert notifier.severities() == ["WARNING"]
        assert expired.exists()


class TestRecoveryRuns:
    def test_point_in_time_recovery(self, backup_config, coordinator_for, make_artifact, touch):
        make_artifact(backup_config.full_dir, "full", datetime(2024, 6, 11, 2, 0), compressed=False)
        backup_config.wal_archive_dir.mkdir(parents=True)
        segment = backup_config.wal_archive_dir / "000000010000000000000002"
        segment.write_bytes(b"\0" * 64)
        touch(segment, datetime(2024, 6, 11, 8, 0))

        result = coordinator_for(backup_config).run_point_in_time_recovery("2024-06-11 14:00:00")

        assert result.status == "success"
        assert result.value["recovery_dir"].startswith(str(backup_config.recovery_root))

    def test_wal_gap_degrades(self, backup_config, coordinator_for, notifier, make_artifact):
        make_artifact(backup_config.full_dir, "full", datetime(2024, 6, 11, 2, 0), compressed=False)

        result = coordinator_for(backup_config).run_point_in_time_recovery("2024-06-11 14:00:00")

        assert result.is_degraded
        assert result.exit_code == 0
        assert "No archived WAL segments" in result.warnings[0]
        assert notifier.severities() == ["WARNING"]

    def test_nas_unreachable_recovery_warns(self, nas_config, coordinator_for, notifier, make_artifact, touch):
        make_artifact(nas_config.full_dir, "full", datetime(2024, 6, 11, 2, 0), compressed=False)
        nas_config.wal_archive_dir.mkdir(parents=True)
        segment = nas_config.wal_archive_dir / "000000010000000000000002"
        segment.write_bytes(b"\0" * 64)
        touch(segment, datetime(2024, 6, 11, 8, 0))

        result = coordinator_for(nas_config, reachable=False).run_point_in_time_recovery("2024-06-11 14:00:00")

        assert result.is_degraded
        assert result.warnings == [
            "NAS unavailable, only local base backups were considered: "
            "NAS host nas.local unreachable on port 445"
        ]
        assert notifier.severities() == ["WARNING"]

    def test_no_suitable_backup(self, backup_config, coordinator_for, notifier):
        result = coordinator_for(backup_config).run_point_in_time_recovery("2024-06-11 14:00:00")

        assert result.exit_code == 1
        assert "No suitable base backup" in result.message
        assert notifier.severities() == ["ERROR"]

    def test_invalid_target(self, backup_config, coordinator_for):
        result = coordinator_for(backup_config).run_point_in_time_recovery("last tuesday")
        assert result.exit_code == 1

    def test_restore_missing_file(self, backup_config, coordinator_for):
        result = coordinator_for(backup_config).run_restore(backup_config.full_dir / "missing.sql")
        assert result.exit_code == 1

    def test_nas_check_failure(self, nas_config, coordinator_for, notifier):
        result = coordinator_for(nas_config, reachable=False).run_nas_check(large_file_mb=1)

        assert result.exit_code == 1
        assert result.value["stages"][0]["stage"] == "connectivity"
        assert notifier.severities() == ["ERROR"]

    def test_nas_check_success(self, nas_config, coordinator_for):
        result = coordinator_for(nas_config).run_nas_check(large_file_mb=1)
        assert result.status == "success"
