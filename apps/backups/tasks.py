"""
Celery tasks for the backup system.

Beat-driven counterparts of the management commands:
- Daily full database backups
- WAL (incremental) backups every 6 hours
- Daily integrity verification with trial restores
- Daily retention cleanup
- NAS connection checks

Tasks are not retried: the run lock turns overlapping runs into immediate
failures and the next scheduled run simply tries again.
"""

import logging

from celery import shared_task

from .coordinator import RunCoordinator

logger = logging.getLogger(__name__)


def summarize(result) -> dict:
    """Reduce a stage result to a JSON-serializable task result."""
    value = result.value
    if hasattr(value, "path"):
        value = {"artifact": str(value.path), "size_bytes": value.size, "checksum": value.checksum}
    return {
        "status": result.status,
        "message": result.message,
        "exit_code": result.exit_code,
        "warnings": list(result.warnings),
        "details": value,
    }


@shared_task(bind=True, name="apps.backups.tasks.run_full_backup")
def run_full_backup(self):
    """
    Perform a full database backup.

    This task:
    1. Waits for the database and checks free disk space
    2. Dumps, compresses, optionally encrypts and checksums the database
    3. Copies the backup to the NAS when it is reachable
    4. Prunes expired backups on both tiers

    Returns:
        Dictionary with the run status and artifact details
    """
    return summarize(RunCoordinator().run_full_backup())


@shared_task(bind=True, name="apps.backups.tasks.run_incremental_backup")
def run_incremental_backup(self):
    """Bundle WAL segments archived since the latest full backup."""
    return summarize(RunCoordinator().run_incremental_backup())


@shared_task(bind=True, name="apps.backups.tasks.run_verification")
def run_verification(self):
    """Verify checksums and trial-restore full backups from the verification window."""
    return summarize(RunCoordinator().run_verification())


@shared_task(bind=True, name="apps.backups.tasks.run_cleanup")
def run_cleanup(self):
    return summarize(RunCoordinator().run_cleanup())


@shared_task(bind=True, name="apps.backups.tasks.check_nas_connection")
def check_nas_connection(self, large_file_mb: int = 10):
    return summarize(RunCoordinator().run_nas_check(large_file_mb=large_file_mb))
