"""
Celery configuration for the PRS backup service.

Beat drives the same pipelines the cron entry points run; every task lands on
the single-concurrency ``backups`` queue and the run lock keeps pipelines
from overlapping when cron and beat are both enabled.
"""

import os

from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.production")

app = Celery("prs_backup")

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Celery Beat Schedule for periodic tasks
app.conf.beat_schedule = {
    # Daily full database backup at 2:00 AM
    "daily-full-database-backup": {
        "task": "apps.backups.tasks.run_full_backup",
        "schedule": crontab(hour=2, minute=0),
        "options": {"queue": "backups", "priority": 10},
    },
    # WAL archiving every 6 hours
    "incremental-wal-backup": {
        "task": "apps.backups.tasks.run_incremental_backup",
        "schedule": crontab(hour="*/6", minute=15),
        "options": {"queue": "backups", "priority": 9},
    },
    # Integrity verification daily at 4:00 AM
    "daily-backup-verification": {
        "task": "apps.backups.tasks.run_verification",
        "schedule": crontab(hour=4, minute=0),
        "options": {"queue": "backups", "priority": 8},
    },
    # Retention enforcement daily at 5:00 AM
    "daily-backup-cleanup": {
        "task": "apps.backups.tasks.run_cleanup",
        "schedule": crontab(hour=5, minute=0),
        "options": {"queue": "backups", "priority": 5},
    },
    # NAS reachability check every 6 hours
    "nas-connection-check": {
        "task": "apps.backups.tasks.check_nas_connection",
        "schedule": crontab(hour="*/6", minute=45),
        "options": {"queue": "backups", "priority": 3},
    },
}

# Task routing configuration
app.conf.task_routes = {
    "apps.backups.tasks.*": {"queue": "backups"},
}
