"""
Backup and disaster recovery app for the PRS PostgreSQL database.

This app provides:
- Daily full database backups (compressed, optionally GnuPG-encrypted)
- Incremental backups bundling archived WAL segments
- Replication to a NAS share with local-only degradation
- Per-tier retention enforcement
- Integrity verification with trial restores into disposable databases
- Point-in-time recovery staging
"""

default_app_config = "apps.backups.apps.BackupsConfig"
