"""
Integrity verification of recent full backups.

For every full backup inside the verification window:

1. Size sanity check
2. Checksum sidecar consistency
3. Trial restore into a uniquely named disposable database, which is dropped
   afterwards on every path

Checksum failures point at storage corruption, restore failures at a format or
version problem, so the two are reported separately. Verification never
deletes or rebuilds an artifact; it only reports.
"""

import logging
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import psycopg2

from .artifacts import FAILED, PASSED, BackupArtifact, list_artifacts, verify_sidecar
from .conf import FULL, BackupConfig
from .database import create_database, drop_database, list_databases, restore_dump
from .encryption import decode_artifact
from .exceptions import ChecksumMismatchError, CompressionError, EncryptionError, RestoreError

logger = logging.getLogger(__name__)

REASON_SIZE = "size"
REASON_CHECKSUM = "checksum"
REASON_DECODE = "decode"
REASON_RESTORE = "restore"


@dataclass
class VerificationOutcome:
    artifact: BackupArtifact
    status: str
    reason: Optional[str] = None
    message: str = ""
    scratch_database: Optional[str] = None
    cleanup_failed: bool = False

    @property
    def passed(self) -> bool:
        return self.status == PASSED


@dataclass
class VerificationReport:
    outcomes: List[VerificationOutcome] = field(default_factory=list)
    leaked_databases_dropped: List[str] = field(default_factory=list)
    cleanup_failures: List[str] = field(default_factory=list)

    @property
    def verified(self) -> int:
        return sum(1 for o in self.outcomes if o.passed)

    @property
    def failed(self) -> List[VerificationOutcome]:
        return [o for o in self.outcomes if not o.passed]

    def as_dict(self) -> dict:
        return {
            "verified": self.verified,
            "failed": len(self.failed),
            "results": [
                {
                    "artifact": o.artifact.name,
                    "status": o.status,
                    "reason": o.reason,
                    "message": o.message,
                }
                for o in self.outcomes
            ],
            "leaked_databases_dropped": list(self.leaked_databases_dropped),
            "cleanup_failures": list(self.cleanup_failures),
        }


class IntegrityVerifier:
    def __init__(self, config: BackupConfig, now=None):
        self.config = config
        self.now = now or datetime.now

    @property
    def scratch_prefix(self) -> str:
        return f"{self.config.prefix}_backup_test_"

    def scratch_database_name(self) -> str:
        return f"{self.scratch_prefix}{self.now():%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}"

    def select(self) -> List[BackupArtifact]:
        """Full backups created within the verification window, oldest first."""
        cutoff = self.now() - timedelta(days=self.config.verify_window_days)
        return [
            artifact
            for artifact in list_artifacts(self.config.full_dir, self.config.prefix, FULL)
            if artifact.timestamp >= cutoff
        ]

    def drop_leaked_databases(self, report: VerificationReport):
        """Drop scratch databases left behind by killed earlier runs."""
        try:
            leaked = list_databases(self.config.database, self.scratch_prefix)
        except psycopg2.Error as e:
            logger.warning(f"Could not list leftover test databases: {e}")
            return

        for name in leaked:
            try:
                drop_database(self.config.database, name)
                report.leaked_databases_dropped.append(name)
                logger.warning(f"Dropped leftover test database {name}")
            except psycopg2.Error as e:
                report.cleanup_failures.append(name)
                logger.warning(f"Failed to drop leftover test database {name}: {e}")

    def verify(self, artifact: BackupArtifact) -> VerificationOutcome:
        logger.info(f"Verifying backup: {artifact.path}")

        if artifact.size < self.config.min_artifact_bytes:
            return self._fail(artifact, REASON_SIZE, f"Backup file too small: {artifact.size} bytes")

        try:
            verify_sidecar(artifact.path)
        except ChecksumMismatchError as e:
            return self._fail(artifact, REASON_CHECKSUM, f"Checksum verification failed: {e}")

        outcome = self.trial_restore(artifact)
        artifact.verification_status = outcome.status
        return outcome

    def trial_restore(self, artifact: BackupArtifact) -> VerificationOutcome:
        scratch = self.scratch_database_name()
        logger.info(f"Testing restoration of {artifact.name} into {scratch}")

        with tempfile.TemporaryDirectory(prefix="prs-verify-", dir=self._work_root()) as work_dir:
            try:
                dump_path, _ = decode_artifact(str(artifact.path), work_dir)
            except (EncryptionError, CompressionError) as e:
                return self._fail(artifact, REASON_DECODE, f"Could not decode backup: {e}")

            try:
                create_database(self.config.database, scratch)
            except psycopg2.Error as e:
                return self._fail(artifact, REASON_RESTORE, f"Could not create test database: {e}")

            outcome = None
            try:
                restore_dump(
                    self.config.database, dump_path, scratch, timeout=self.config.command_timeout
                )
                outcome = VerificationOutcome(
                    artifact=artifact, status=PASSED, message="Restoration test passed"
                )
                logger.info(f"Restoration test passed: {artifact.name}")
            except RestoreError as e:
                outcome = self._fail(artifact, REASON_RESTORE, f"Restoration test failed: {e}")
            finally:
                cleanup_failed = not self._drop_scratch(scratch)
                if outcome is not None:
                    outcome.scratch_database = scratch
                    outcome.cleanup_failed = cleanup_failed

        return outcome

    def _drop_scratch(self, name: str) -> bool:
        try:
            drop_database(self.config.database, name)
        except psycopg2.Error as e:
            logger.warning(f"Failed to drop test database {name}; drop it manually: {e}")
            return False
        return True

    def _work_root(self) -> str:
        root = Path(self.config.recovery_root)
        root.mkdir(parents=True, exist_ok=True)
        return str(root)

    def _fail(self, artifact, reason, message) -> VerificationOutcome:
        logger.error(f"{message} ({artifact.name})")
        artifact.verification_status = FAILED
        return VerificationOutcome(artifact=artifact, status=FAILED, reason=reason, message=message)

    def run(self) -> VerificationReport:
        report = VerificationReport()
        self.drop_leaked_databases(report)

        for artifact in self.select():
            outcome = self.verify(artifact)
            report.outcomes.append(outcome)
            if outcome.cleanup_failed and outcome.scratch_database:
                report.cleanup_failures.append(outcome.scratch_database)

        logger.info(
            f"Backup verification completed: {report.verified} verified, {len(report.failed)} failed"
        )
        return report
