"""
Management command to enforce backup retention on the local disk and the NAS.
"""

from apps.backups.management.base import BackupCommand


class Command(BackupCommand):
    help = "Delete backups older than their retention period"
    title = "Backup cleanup"

    def run(self, coordinator, **options):
        return coordinator.run_cleanup()
