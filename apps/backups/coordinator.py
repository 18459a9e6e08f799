"""
Run coordinator.

Every entry point (full backup, incremental backup, verification, cleanup,
point-in-time recovery, restore, NAS check) runs through ``RunCoordinator``:

    lock -> NAS session (best-effort) -> stage(s) -> NAS release -> lock release

Exceptions raised by the stages are turned into tagged results
(``Success`` / ``Degraded`` / ``Failure``) and notifications here, so callers
only have to map the result to an exit code.
"""

import logging
import time
from contextlib import contextmanager
from datetime import datetime

from .conf import get_backup_config
from .exceptions import BackupError, IntegrityError, MountError, ReplicationError
from .full_backup import FullBackupProducer
from .locking import RunLock
from .mount import MountSession
from .nas_check import DEFAULT_LARGE_FILE_MB, NasConnectionCheck
from .notifications import Notifier
from .pitr import PitrOrchestrator, parse_recovery_target
from .restore import DatabaseRestorer
from .results import Degraded, Failure, Success
from .retention import RetentionEnforcer
from .storage import NasStorage, replicate_artifact
from .verification import IntegrityVerifier
from .wal import WalArchiver

logger = logging.getLogger(__name__)


class RunCoordinator:
    def __init__(self, config=None, notifier=None, now=None, session_factory=None, lock_factory=None):
        self.config = config or get_backup_config()
        self.notifier = notifier or Notifier.from_config(self.config)
        self.now = now or datetime.now
        self.session_factory = session_factory or MountSession.from_config
        self.lock_factory = lock_factory or RunLock

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _execute(self, name, body):
        logger.info("=" * 80)
        logger.info(f"Starting {name}")
        logger.info("=" * 80)
        started = time.monotonic()

        try:
            with self.lock_factory(self.config.lock_file):
                result = body()
        except BackupError as e:
            result = Failure(e, message=f"{name} failed: {e}")
            self.notifier.error(result.message, {"run": name, "error": type(e).__name__})
        except Exception as e:
            logger.exception(f"Unexpected error during {name}")
            result = Failure(e, message=f"{name} failed with unexpected error: {e}")
            self.notifier.critical(result.message, {"run": name, "error": type(e).__name__})

        duration = time.monotonic() - started
        logger.info("=" * 80)
        logger.info(f"{name} finished: {result.status} in {duration:.1f}s - {result.message}")
        logger.info("=" * 80)
        return result

    @contextmanager
    def nas_storage(self):
        """
        Yield a NasStorage bound to a mount session, or None when the NAS tier
        is disabled. The share is released on every exit path.
        """
        if not self.config.nas.enabled:
            logger.info("NAS backup disabled, running local-only")
            yield None
            return

        session = self.session_factory(self.config)
        try:
            result = session.acquire()
            for warning in result.warnings:
                if warning != result.message:
                    self.notifier.warning(warning, {"nas_host": self.config.nas.host})
            yield NasStorage(session)
        finally:
            session.release()

    def _replicate(self, artifact, nas):
        if nas is None:
            return Success(None, message="NAS disabled")
        if not nas.session.is_mounted:
            return Degraded(f"NAS replication skipped: {nas.session.last_error or 'NAS not mounted'}")
        try:
            replica = replicate_artifact(
                artifact,
                nas,
                retries=self.config.network_retries,
                retry_delay=self.config.network_retry_delay,
            )
        except (ReplicationError, MountError) as e:
            return Degraded(f"NAS replication failed: {e}")
        return Success(replica, message="Replicated to NAS")

    def _enforce_retention(self, nas):
        report = RetentionEnforcer(self.config, nas, now=self.now).run()
        warnings = [f"Retention for {category} failed: {error}" for category, error in report.errors.items()]
        if self.config.nas.enabled:
            warnings.extend(f"NAS not mounted, {category} cleanup skipped" for category in report.skipped)
        if report.kept_unreplicated:
            warnings.append(
                f"{len(report.kept_unreplicated)} expired backups kept until their NAS replica is confirmed"
            )
        return report, warnings

    def _publish(self, artifact, nas, label):
        replication = self._replicate(artifact, nas)
        report, warnings = self._enforce_retention(nas)

        details = {
            "artifact": str(artifact.path),
            "size_bytes": artifact.size,
            "checksum": artifact.checksum,
            "encrypted": artifact.encrypted,
            "files_deleted": report.total_deleted,
        }

        if replication.is_degraded:
            details["nas"] = replication.message
            message = f"{label}: local backup completed, {replication.message}"
            self.notifier.warning(message, details)
            return Degraded(message, value=artifact, warnings=[replication.message] + warnings)

        if replication.value is not None:
            details["nas_copy"] = str(replication.value.path)
            message = f"{label}: Local and NAS backup completed"
        else:
            message = f"{label}: Local backup completed"

        if warnings:
            self.notifier.warning(f"{message} with warnings", dict(details, warnings=warnings))
            return Degraded(message, value=artifact, warnings=warnings)

        self.notifier.info(message, details)
        return Success(artifact, message=message)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_full_backup(self):
        return self._execute("full backup", self._full_backup)

    def _full_backup(self):
        producer = FullBackupProducer(self.config, now=self.now)
        producer.check_preconditions()
        with self.nas_storage() as nas:
            artifact = producer.produce()
            return self._publish(artifact, nas, "Full backup")

    def run_incremental_backup(self):
        return self._execute("incremental backup", self._incremental_backup)

    def _incremental_backup(self):
        archiver = WalArchiver(self.config, now=self.now)
        base = archiver.base_backup()
        if base is None:
            logger.warning("No full backup found, running full backup first")
            result = self._full_backup()
            result.message = f"No full backup found, ran a full backup instead. {result.message}"
            return result

        with self.nas_storage() as nas:
            artifact = archiver.produce(base)
            if artifact is None:
                return Success(None, message="No new WAL segments since the last full backup")
            return self._publish(artifact, nas, "Incremental backup")

    def run_verification(self):
        return self._execute("backup verification", self._verify)

    def _verify(self):
        report = IntegrityVerifier(self.config, now=self.now).run()
        summary = report.as_dict()

        for outcome in report.failed:
            if outcome.reason == "checksum":
                message = f"Backup checksum mismatch (storage corruption suspected): {outcome.artifact.name}"
            elif outcome.reason == "restore":
                message = f"Backup restore test failed (format or version problem suspected): {outcome.artifact.name}"
            else:
                message = f"Backup verification failed: {outcome.artifact.name}"
            self.notifier.error(message, {"reason": outcome.reason, "error": outcome.message})

        if report.cleanup_failures:
            self.notifier.warning(
                "Test databases could not be dropped and need manual cleanup",
                {"databases": ", ".join(report.cleanup_failures)},
            )

        if report.failed:
            error = IntegrityError(
                f"Backup verification found {len(report.failed)} failed backups "
                f"({report.verified} verified)"
            )
            return Failure(error, value=summary)

        if not report.outcomes:
            message = f"No full backups from the last {self.config.verify_window_days} days to verify"
            self.notifier.warning(message)
            return Degraded(message, value=summary)

        message = f"Backup verification completed: {report.verified} verified, 0 failed"
        if report.cleanup_failures:
            return Degraded(message, value=summary, warnings=list(report.cleanup_failures))
        self.notifier.info(message, summary)
        return Success(summary, message=message)

    def run_cleanup(self):
        return self._execute("backup cleanup", self._cleanup)

    def _cleanup(self):
        with self.nas_storage() as nas:
            report, warnings = self._enforce_retention(nas)

        summary = report.as_dict()
        message = f"Backup cleanup completed: {report.total_deleted} files deleted"
        if warnings:
            self.notifier.warning(f"{message} with warnings", {"warnings": warnings})
            return Degraded(message, value=summary, warnings=warnings)
        self.notifier.info(message, {"deleted": report.deleted, "freed_bytes": report.freed_bytes})
        return Success(summary, message=message)

    def run_point_in_time_recovery(self, target, scratch_database=None):
        return self._execute(
            "point-in-time recovery", lambda: self._point_in_time_recovery(target, scratch_database)
        )

    def _point_in_time_recovery(self, target, scratch_database):
        if isinstance(target, str):
            target = parse_recovery_target(target)

        warnings = []
        with self.nas_storage() as nas:
            if nas is not None and not nas.session.is_mounted:
                warnings.append(
                    "NAS unavailable, only local base backups were considered: "
                    f"{nas.session.last_error or 'NAS not mounted'}"
                )
            orchestrator = PitrOrchestrator(self.config, nas, now=self.now)
            plan = orchestrator.stage(target)

        if scratch_database:
            orchestrator.restore_into_scratch(plan, scratch_database)

        summary = plan.as_dict()
        if scratch_database:
            summary["scratch_database"] = scratch_database
        message = f"Point-in-time recovery staged in {plan.recovery_dir}"

        if plan.skipped:
            warnings.append(f"Skipped unusable base backups: {', '.join(plan.skipped)}")
        warnings.extend(plan.warnings)
        if warnings:
            self.notifier.warning(f"{message}; {'; '.join(warnings)}", summary)
            return Degraded(message, value=summary, warnings=warnings)

        self.notifier.info(message, summary)
        return Success(summary, message=message)

    def run_restore(self, artifact_path, target_db=None):
        return self._execute("database restore", lambda: self._restore(artifact_path, target_db))

    def _restore(self, artifact_path, target_db):
        summary = DatabaseRestorer(self.config).restore(artifact_path, target_db)
        message = f"Database {summary['database']} restored from {artifact_path}"
        if summary["warnings"]:
            self.notifier.warning(message, summary)
            return Degraded(message, value=summary, warnings=summary["warnings"])
        self.notifier.info(message, summary)
        return Success(summary, message=message)

    def run_nas_check(self, large_file_mb=DEFAULT_LARGE_FILE_MB):
        return self._execute("NAS connection test", lambda: self._nas_check(large_file_mb))

    def _nas_check(self, large_file_mb):
        check = NasConnectionCheck(self.config, large_file_mb, session=self.session_factory(self.config))
        report = check.run()
        summary = {"stages": [{"stage": s, "ok": ok, "detail": d} for s, ok, d in report.stages]}
        if not report.passed:
            failed = next((s for s, ok, d in report.stages if not ok), "connectivity")
            error = MountError(f"NAS {failed} test failed")
            self.notifier.error(str(error), {"nas_host": self.config.nas.host})
            return Failure(error, value=summary)
        return Success(summary, message="All NAS tests passed")
