"""
Point-in-time recovery staging.

Given a recovery target, picks the newest full backup strictly before it,
works out the WAL range the server will replay, and stages both the decoded
base backup and a ``recovery.conf`` in a fresh recovery directory. Replaying
WAL is left to PostgreSQL's own recovery.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .artifacts import BackupArtifact, list_artifacts, verify_sidecar
from .conf import FULL, NAS, BackupConfig
from .database import create_database, restore_dump
from .encryption import decode_artifact
from .exceptions import (
    ChecksumMismatchError,
    CompressionError,
    EncryptionError,
    InvalidRecoveryTargetError,
    NoSuitableBackupError,
)
from .wal import WALSegment, list_segments, segments_between

logger = logging.getLogger(__name__)

RECOVERY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
RECOVERY_CONF_NAME = "recovery.conf"
STAGED_DUMP_NAME = "base_backup.dump"


def parse_recovery_target(value: str) -> datetime:
    """
    Parse an operator-supplied "YYYY-MM-DD HH:MM:SS" recovery target.

    Raises:
        InvalidRecoveryTargetError: If the value is not in that format
    """
    try:
        return datetime.strptime(value.strip(), RECOVERY_TIME_FORMAT)
    except (ValueError, AttributeError) as e:
        raise InvalidRecoveryTargetError(
            f"Invalid recovery time {value!r}; expected 'YYYY-MM-DD HH:MM:SS'"
        ) from e


def render_recovery_conf(wal_archive_dir, target: datetime) -> str:
    return (
        f"restore_command = 'cp {wal_archive_dir}/%f %p'\n"
        f"recovery_target_time = '{target.strftime(RECOVERY_TIME_FORMAT)}'\n"
        "recovery_target_timeline = 'latest'\n"
    )


@dataclass
class RecoveryPlan:
    target: datetime
    base_backup: BackupArtifact
    wal_segments: List[WALSegment] = field(default_factory=list)
    recovery_dir: Optional[Path] = None
    staged_dump: Optional[Path] = None
    recovery_conf: Optional[Path] = None
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "target": self.target.strftime(RECOVERY_TIME_FORMAT),
            "base_backup": str(self.base_backup.path),
            "base_backup_tier": self.base_backup.tier,
            "wal_segments": len(self.wal_segments),
            "first_wal_segment": self.wal_segments[0].name if self.wal_segments else None,
            "last_wal_segment": self.wal_segments[-1].name if self.wal_segments else None,
            "recovery_dir": str(self.recovery_dir) if self.recovery_dir else None,
            "recovery_conf": str(self.recovery_conf) if self.recovery_conf else None,
            "skipped": list(self.skipped),
            "warnings": list(self.warnings),
        }


class PitrOrchestrator:
    def __init__(self, config: BackupConfig, nas=None, now=None):
        self.config = config
        self.nas = nas
        self.now = now or datetime.now

    def candidates(self, target: datetime) -> List[BackupArtifact]:
        """
        Full backups strictly older than ``target``, newest first.

        NAS replicas are included while the share is mounted; when both tiers
        hold the same backup the local copy comes first.
        """
        artifacts = list_artifacts(self.config.full_dir, self.config.prefix, FULL)
        if self.nas is not None and self.nas.session.is_mounted:
            local_names = {a.name for a in artifacts}
            artifacts.extend(
                replica
                for replica in list_artifacts(
                    self.config.nas.directory_for(FULL), self.config.prefix, FULL, tier=NAS
                )
                if replica.name not in local_names
            )

        eligible = [a for a in artifacts if a.timestamp < target]
        eligible.sort(key=lambda a: (a.timestamp, a.tier != NAS, a.name), reverse=True)
        return eligible

    def check_target(self, target: datetime):
        if target > self.now():
            raise InvalidRecoveryTargetError(
                f"Recovery target {target.strftime(RECOVERY_TIME_FORMAT)} is in the future"
            )

    def select_base(self, target: datetime) -> BackupArtifact:
        """
        Raises:
            NoSuitableBackupError: If no full backup exists strictly before ``target``
        """
        self.check_target(target)
        candidates = self.candidates(target)
        if not candidates:
            raise NoSuitableBackupError(
                f"No suitable base backup found before {target.strftime(RECOVERY_TIME_FORMAT)}"
            )
        return candidates[0]

    def wal_range(self, base: BackupArtifact, target: datetime) -> List[WALSegment]:
        return segments_between(list_segments(self.config.wal_archive_dir), base.timestamp, target)

    def plan(self, target: datetime) -> RecoveryPlan:
        """Selection only; nothing is written."""
        base = self.select_base(target)
        return RecoveryPlan(target=target, base_backup=base, wal_segments=self.wal_range(base, target))

    def stage(self, target: datetime) -> RecoveryPlan:
        """
        Select the base backup and stage it with a recovery configuration.

        A candidate that fails its checksum or cannot be decoded is skipped in
        favour of the next older one.

        Returns:
            The staged RecoveryPlan

        Raises:
            NoSuitableBackupError: If no intact base backup precedes ``target``
            InvalidRecoveryTargetError: If ``target`` is in the future
        """
        self.check_target(target)
        candidates = self.candidates(target)
        if not candidates:
            raise NoSuitableBackupError(
                f"No suitable base backup found before {target.strftime(RECOVERY_TIME_FORMAT)}"
            )

        logger.info(f"Starting point-in-time recovery to: {target.strftime(RECOVERY_TIME_FORMAT)}")
        recovery_dir = Path(self.config.recovery_root) / f"prs-recovery-{self.now():%Y%m%d_%H%M%S}"
        recovery_dir.mkdir(parents=True, exist_ok=True)

        skipped = []
        for base in candidates:
            try:
                staged_dump = self._stage_base(base, recovery_dir)
            except (ChecksumMismatchError, EncryptionError, CompressionError) as e:
                logger.error(f"Base backup {base.name} unusable, trying an older one: {e}")
                skipped.append(base.name)
                continue

            plan = RecoveryPlan(
                target=target,
                base_backup=base,
                wal_segments=self.wal_range(base, target),
                recovery_dir=recovery_dir,
                staged_dump=staged_dump,
                skipped=skipped,
            )
            plan.recovery_conf = recovery_dir / RECOVERY_CONF_NAME
            plan.recovery_conf.write_text(render_recovery_conf(self.config.wal_archive_dir, target))

            logger.info(f"Using base backup: {base.path} ({base.tier})")
            logger.info(f"WAL segments to replay: {len(plan.wal_segments)}")
            if not plan.wal_segments:
                warning = (
                    f"No archived WAL segments between {base.timestamp:%Y-%m-%d %H:%M:%S} and "
                    f"{target.strftime(RECOVERY_TIME_FORMAT)}; recovery can only reach the base backup"
                )
                logger.warning(warning)
                plan.warnings.append(warning)
            logger.info("Point-in-time recovery setup completed")
            logger.info("Manual intervention required:")
            logger.info("1. Copy recovery data to PostgreSQL data directory")
            logger.info(f"2. Start PostgreSQL with {plan.recovery_conf}")
            logger.info("3. Verify recovery completion")
            logger.info(f"Recovery directory: {recovery_dir}")
            return plan

        shutil.rmtree(recovery_dir, ignore_errors=True)
        raise NoSuitableBackupError(
            f"No intact base backup found before {target.strftime(RECOVERY_TIME_FORMAT)} "
            f"(skipped: {', '.join(skipped)})"
        )

    def _stage_base(self, base: BackupArtifact, recovery_dir: Path) -> Path:
        verify_sidecar(base.path)
        staged = recovery_dir / STAGED_DUMP_NAME
        work_dir = recovery_dir / ".work"
        try:
            dump_path, _ = decode_artifact(str(base.path), str(work_dir))
            if Path(dump_path) == base.path:
                shutil.copyfile(base.path, staged)
            else:
                Path(dump_path).replace(staged)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
        logger.info(f"Base backup staged at {staged}")
        return staged

    def restore_into_scratch(self, plan: RecoveryPlan, database_name: str):
        """Restore the staged base backup into a new database for inspection."""
        create_database(self.config.database, database_name)
        restore_dump(
            self.config.database, str(plan.staged_dump), database_name, timeout=self.config.command_timeout
        )
        logger.info(f"Base backup restored into scratch database {database_name}")
