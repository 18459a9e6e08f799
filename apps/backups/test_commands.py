"""
Tests for the backup management commands (the cron entry points).
"""

from io import StringIO
from unittest.mock import Mock, patch

from django.core.management import call_command
from django.core.management.base import CommandError

import pytest

from apps.backups.exceptions import MountError
from apps.backups.results import Degraded, Failure, Success


@pytest.fixture
def coordinator():
    with patch("apps.backups.management.base.RunCoordinator") as coordinator_class:
        yield coordinator_class.return_value


def run(name, *args, **options):
    out = StringIO()
    call_command(name, *args, stdout=out, **options)
    return out.getvalue()


class TestBackupCommands:
    def test_full_backup_success(self, coordinator):
        coordinator.run_full_backup.return_value = Success(
            {"artifact": "/mnt/hdd/postgres-backups/daily/prs_full_backup_20240615_020000.sql.gz"},
            message="Full backup: Local backup completed",
        )

        output = run("backup_full")

        assert "✓ Full backup: Local backup completed" in output
        assert "prs_full_backup_20240615_020000.sql.gz" in output

    def test_degraded_run_exits_zero(self, coordinator):
        coordinator.run_full_backup.return_value = Degraded("Full backup: local backup completed, NAS unreachable")

        output = run("backup_full")

        assert "(degraded)" in output
        assert "! Full backup: local backup completed, NAS unreachable" in output

    def test_failure_raises_command_error(self, coordinator):
        coordinator.run_full_backup.return_value = Failure(
            MountError("x"), message="full backup failed: Backup already running (pid 4242)"
        )

        with pytest.raises(CommandError) as exc_info:
            run("backup_full")

        assert exc_info.value.returncode == 1
        assert "already running" in str(exc_info.value)

    @patch("apps.backups.management.commands.backup_full.run_full_backup")
    def test_full_backup_async(self, mock_task, coordinator):
        mock_task.apply_async.return_value = Mock(id="task-123")

        output = run("backup_full", "--async")

        mock_task.apply_async.assert_called_once_with(queue="backups")
        assert "task-123" in output
        coordinator.run_full_backup.assert_not_called()

    def test_incremental(self, coordinator):
        coordinator.run_incremental_backup.return_value = Success(
            None, message="No new WAL segments since the last full backup"
        )
        assert "No new WAL segments" in run("backup_incremental")

    def test_verify(self, coordinator):
        coordinator.run_verification.return_value = Success(
            {"verified": 2, "failed": 0}, message="Backup verification completed: 2 verified, 0 failed"
        )
        output = run("verify_backups")
        assert "verified: 2" in output

    def test_cleanup(self, coordinator):
        coordinator.run_cleanup.return_value = Success({}, message="Backup cleanup completed: 0 files deleted")
        assert "Backup cleanup completed" in run("cleanup_backups")

    def test_point_in_time(self, coordinator):
        coordinator.run_point_in_time_recovery.return_value = Success(
            {"recovery_dir": "/tmp/prs-recovery-20240615_120000"},
            message="Point-in-time recovery staged in /tmp/prs-recovery-20240615_120000",
        )

        run("restore_point_in_time", "2024-06-11 14:30:00", "--scratch-database", "prs_pitr")

        coordinator.run_point_in_time_recovery.assert_called_once_with(
            "2024-06-11 14:30:00", scratch_database="prs_pitr"
        )

    def test_restore_database(self, coordinator):
        coordinator.run_restore.return_value = Success(
            {"database": "prs", "tables": 42, "warnings": []}, message="Database prs restored"
        )

        run("restore_database", "/mnt/hdd/postgres-backups/daily/prs_full_backup_20240615_020000.sql.gz")

        assert coordinator.run_restore.call_args[0][0].endswith("prs_full_backup_20240615_020000.sql.gz")

    def test_nas_connection(self, coordinator):
        coordinator.run_nas_check.return_value = Success(
            {"stages": [{"stage": "connectivity", "ok": True, "detail": "nas.local:445 (cifs)"}]},
            message="All NAS tests passed",
        )

        output = run("test_nas_connection", "--large-file-mb", "5")

        coordinator.run_nas_check.assert_called_once_with(large_file_mb=5)
        assert "✓ connectivity nas.local:445 (cifs)" in output
