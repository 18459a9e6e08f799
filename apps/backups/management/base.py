"""
Shared base for the backup management commands.

Each command runs one pipeline through the RunCoordinator, prints the
outcome, and exits 1 on failure so cron can detect it. Degraded runs (for
example NAS unreachable) still exit 0 but are printed as warnings.
"""

from django.core.management.base import BaseCommand, CommandError

from apps.backups.coordinator import RunCoordinator


class BackupCommand(BaseCommand):
    title = "Backup run"

    def run(self, coordinator, **options):
        raise NotImplementedError

    def get_coordinator(self):
        return RunCoordinator()

    def write_details(self, result):
        details = result.value
        if hasattr(details, "path"):
            self.stdout.write(f"  Artifact: {details.path}")
            self.stdout.write(f"  Size: {details.size} bytes")
            if details.checksum:
                self.stdout.write(f"  Checksum: {details.checksum}")
        elif isinstance(details, dict):
            for key, value in details.items():
                self.stdout.write(f"  {key}: {value}")

    def handle(self, *args, **options):
        self.stdout.write("=" * 80)
        self.stdout.write(self.style.SUCCESS(f"Starting {self.title.lower()}..."))
        self.stdout.write("=" * 80)

        result = self.run(self.get_coordinator(), **options)

        self.write_details(result)
        for warning in result.warnings:
            self.stdout.write(self.style.WARNING(f"  ! {warning}"))

        self.stdout.write("=" * 80)
        if not result.ok:
            self.stdout.write(self.style.ERROR(f"✗ {result.message}"))
            self.stdout.write("=" * 80)
            raise CommandError(result.message, returncode=1)

        if result.is_degraded:
            self.stdout.write(self.style.WARNING(f"✓ {result.message} (degraded)"))
        else:
            self.stdout.write(self.style.SUCCESS(f"✓ {result.message}"))
        self.stdout.write("=" * 80)
