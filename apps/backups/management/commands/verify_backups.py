"""
Management command to verify recent full backups (checksum + trial restore).
"""

from apps.backups.management.base import BackupCommand


class Command(BackupCommand):
    help = "Verify checksums and test-restore full backups from the verification window"
    title = "Backup verification"

    def run(self, coordinator, **options):
        return coordinator.run_verification()
