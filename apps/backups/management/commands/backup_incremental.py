"""
Management command for the incremental (WAL) backup.

Runs a full backup instead when no full backup exists yet.
"""

from apps.backups.management.base import BackupCommand


class Command(BackupCommand):
    help = "Bundle WAL segments archived since the latest full backup"
    title = "Incremental backup"

    def run(self, coordinator, **options):
        return coordinator.run_incremental_backup()
