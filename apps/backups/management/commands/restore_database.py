"""
Management command to restore a backup artifact over a database.

Stop the application before running it; the target database is dropped and
recreated.
"""

from apps.backups.management.base import BackupCommand


class Command(BackupCommand):
    help = "Restore a backup file into a database (default: the configured database)"
    title = "Database restore"

    def add_arguments(self, parser):
        parser.add_argument("backup_file", help="Path to the backup artifact")
        parser.add_argument("target_db", nargs="?", help="Database to restore into")

    def run(self, coordinator, **options):
        return coordinator.run_restore(options["backup_file"], options.get("target_db"))
