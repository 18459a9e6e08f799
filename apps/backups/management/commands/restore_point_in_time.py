"""
Management command to stage a point-in-time recovery.

Usage: python manage.py restore_point_in_time "2024-08-22 14:30:00"
"""

from apps.backups.management.base import BackupCommand


class Command(BackupCommand):
    help = "Stage the newest base backup before a target time together with a recovery.conf"
    title = "Point-in-time recovery"

    def add_arguments(self, parser):
        parser.add_argument("recovery_time", help="Recovery target, 'YYYY-MM-DD HH:MM:SS'")
        parser.add_argument(
            "--scratch-database",
            help="Also restore the staged base backup into this new database for inspection",
        )

    def run(self, coordinator, **options):
        return coordinator.run_point_in_time_recovery(
            options["recovery_time"], scratch_database=options.get("scratch_database")
        )
