"""
Restore a backup artifact over a live database.

Stopping and starting the application around a restore is left to the
operator; this module only replaces the database contents.
"""

import logging
import tempfile
from pathlib import Path
from typing import Optional

from .artifacts import verify_sidecar
from .conf import BackupConfig
from .database import count_public_tables, create_database, drop_database, restore_dump, wait_until_ready
from .encryption import decode_artifact
from .exceptions import RestoreError

logger = logging.getLogger(__name__)

MIN_EXPECTED_TABLES = 10


class DatabaseRestorer:
    def __init__(self, config: BackupConfig):
        self.config = config

    def restore(self, artifact_path, target_db: Optional[str] = None) -> dict:
        """
        Verify, decode and restore ``artifact_path`` into ``target_db``.

        The target database is dropped and recreated first.

        Returns:
            Dictionary with the target database, table count and warnings

        Raises:
            RestoreError: If the artifact is missing or pg_restore fails
            ChecksumMismatchError: If the artifact is corrupt
            DatabaseNotReadyError: If the server never reports ready
        """
        artifact_path = Path(artifact_path)
        target_db = target_db or self.config.database.name
        warnings = []

        if not artifact_path.is_file():
            raise RestoreError(f"Backup file not found: {artifact_path}")

        logger.info(f"Starting database restore from: {artifact_path}")
        if not verify_sidecar(artifact_path):
            warnings.append(f"No checksum sidecar for {artifact_path.name}; integrity not verified")

        wait_until_ready(
            self.config.database,
            timeout=self.config.ready_timeout,
            poll_interval=self.config.ready_poll_interval,
        )

        root = Path(self.config.recovery_root)
        root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="prs-restore-", dir=str(root)) as work_dir:
            dump_path, _ = decode_artifact(str(artifact_path), work_dir)

            logger.info(f"Recreating database {target_db}")
            drop_database(self.config.database, target_db)
            create_database(self.config.database, target_db)
            restore_dump(
                self.config.database,
                dump_path,
                target_db,
                clean=True,
                timeout=self.config.command_timeout,
            )

        tables = count_public_tables(self.config.database, target_db)
        logger.info(f"Database restore completed: {tables} tables in public schema")
        if tables <= MIN_EXPECTED_TABLES:
            warning = f"Only {tables} tables restored into {target_db}; the restore may be incomplete"
            logger.warning(warning)
            warnings.append(warning)

        return {"database": target_db, "tables": tables, "warnings": warnings}
