"""
Full backup producer.

Produces exactly one ``full`` artifact per run:

1. Preconditions: the database reports ready and the destination has the
   configured minimum free space
2. pg_dump (custom format, maximal compression, no owner/privilege statements)
   into a ``.partial`` file
3. Sanity check of the dump size
4. Gzip, optional GnuPG encryption, rename into place, checksum sidecar

Nothing reaches its final name unless every step succeeded.
"""

import logging
import shutil
from datetime import datetime
from pathlib import Path

from .artifacts import PARTIAL_SUFFIX, BackupArtifact, build_filename, commit_artifact
from .conf import FULL, BackupConfig
from .database import dump_database, wait_until_ready
from .encryption import compress_file
from .exceptions import ArtifactTooSmallError, InsufficientSpaceError

logger = logging.getLogger(__name__)


def ensure_free_space(directory, min_free_bytes: int):
    """
    Raise InsufficientSpaceError when ``directory``'s filesystem is below the threshold.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    free = shutil.disk_usage(directory).free
    if free < min_free_bytes:
        raise InsufficientSpaceError(
            f"Insufficient disk space in {directory}: {free} bytes available, "
            f"{min_free_bytes} bytes required"
        )
    logger.info(f"Disk space check passed for {directory}: {free} bytes available")
    return free


class FullBackupProducer:
    def __init__(self, config: BackupConfig, now=None):
        self.config = config
        self.now = now or datetime.now

    def check_preconditions(self):
        """
        Raises:
            DatabaseNotReadyError: If the database never reports ready
            InsufficientSpaceError: If the destination is short on space
        """
        wait_until_ready(
            self.config.database,
            timeout=self.config.ready_timeout,
            poll_interval=self.config.ready_poll_interval,
        )
        ensure_free_space(self.config.full_dir, self.config.min_free_bytes)

    def produce(self) -> BackupArtifact:
        """
        Dump, verify, compress, encrypt and commit a full backup.

        Returns:
            The committed artifact

        Raises:
            CommandFailedError: If pg_dump fails
            ArtifactTooSmallError: If the dump is below the sanity threshold
            CompressionError, EncryptionError: If post-processing fails
        """
        config = self.config
        timestamp = self.now()
        config.full_dir.mkdir(parents=True, exist_ok=True)

        final_path = config.full_dir / build_filename(
            config.prefix, FULL, timestamp, config.full_extension, compressed=config.gzip_artifacts
        )
        dump_path = config.full_dir / (
            build_filename(config.prefix, FULL, timestamp, config.full_extension) + PARTIAL_SUFFIX
        )
        work_files = [dump_path]

        logger.info(f"Creating full backup: {final_path.name}")
        try:
            dump_database(config.database, str(dump_path), timeout=config.command_timeout)

            dump_size = dump_path.stat().st_size
            if dump_size < config.min_artifact_bytes:
                raise ArtifactTooSmallError(
                    f"Backup file too small ({dump_size} bytes, minimum {config.min_artifact_bytes}); "
                    "the dump is empty or corrupt"
                )
            logger.info(f"Database dump completed: {dump_size} bytes")

            work_path = dump_path
            if config.gzip_artifacts:
                compressed_path = Path(f"{final_path}{PARTIAL_SUFFIX}")
                work_files.append(compressed_path)
                compress_file(str(dump_path), str(compressed_path), level=config.compression_level)
                dump_path.unlink()
                work_path = compressed_path

            work_files.append(Path(f"{final_path}.gpg{PARTIAL_SUFFIX}"))
            artifact = commit_artifact(work_path, final_path, config.encryption_recipient)
        finally:
            for path in work_files:
                if path.exists():
                    logger.info(f"Removing incomplete file {path.name}")
                    path.unlink()

        logger.info(f"Full backup committed: {artifact.path} ({artifact.size} bytes)")
        return artifact
