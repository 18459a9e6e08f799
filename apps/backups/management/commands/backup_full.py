"""
Management command for the daily full database backup (cron entry point).
"""

from apps.backups.management.base import BackupCommand
from apps.backups.tasks import run_full_backup


class Command(BackupCommand):
    help = "Create a full database backup, replicate it to the NAS and prune expired backups"
    title = "Full backup"

    def add_arguments(self, parser):
        parser.add_argument(
            "--async",
            action="store_true",
            help="Queue the backup on the Celery 'backups' queue instead of running it here",
        )

    def handle(self, *args, **options):
        if options.get("async"):
            task = run_full_backup.apply_async(queue="backups")
            self.stdout.write(self.style.SUCCESS(f"Full database backup task queued: {task.id}"))
            return
        super().handle(*args, **options)

    def run(self, coordinator, **options):
        return coordinator.run_full_backup()
