"""
Retention enforcement.

Each ``(class, tier)`` pair is pruned on its own: a failure on one tier is
recorded and the others still run. Local copies of classes marked
replicate-before-expire are only deleted once the NAS holds a confirmed
replica.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .artifacts import PARTIAL_SUFFIX, list_artifacts, remove_artifact
from .conf import FULL, INCREMENTAL, LOCAL, NAS, WAL, BackupConfig
from .exceptions import BackupError, MountError, ReplicationError
from .storage import LocalStorage, NasStorage, replica_confirmed, replicate_artifact
from .wal import list_segments

logger = logging.getLogger(__name__)

STALE_PARTIAL_AGE = timedelta(days=1)


@dataclass
class RetentionReport:
    deleted: Dict[str, int] = field(default_factory=dict)
    freed_bytes: int = 0
    kept_unreplicated: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    usage: Dict[str, Dict[str, int]] = field(default_factory=dict)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())

    def as_dict(self) -> dict:
        return {
            "deleted": dict(self.deleted),
            "total_deleted": self.total_deleted,
            "freed_bytes": self.freed_bytes,
            "kept_unreplicated": list(self.kept_unreplicated),
            "errors": dict(self.errors),
            "skipped": list(self.skipped),
            "usage": dict(self.usage),
        }


class RetentionEnforcer:
    def __init__(self, config: BackupConfig, nas: Optional[NasStorage] = None, now=None):
        self.config = config
        self.nas = nas
        self.now = now or datetime.now

    @property
    def nas_mounted(self) -> bool:
        return self.nas is not None and self.nas.session.is_mounted

    def run(self) -> RetentionReport:
        report = RetentionReport()
        now = self.now()

        steps = [
            (f"{FULL}_{LOCAL}", lambda: self.expire_local(FULL, now, report)),
            (f"{INCREMENTAL}_{LOCAL}", lambda: self.expire_local(INCREMENTAL, now, report)),
            (f"{WAL}_{LOCAL}", lambda: self.expire_wal(now, report)),
            (f"{FULL}_{NAS}", lambda: self.expire_nas(FULL, now, report)),
            (f"{INCREMENTAL}_{NAS}", lambda: self.expire_nas(INCREMENTAL, now, report)),
            ("partial_files", lambda: self.remove_stale_partials(now, report)),
        ]
        for category, step in steps:
            report.deleted.setdefault(category, 0)
            try:
                step()
            except (BackupError, OSError) as e:
                report.errors[category] = str(e)
                logger.error(f"Retention for {category} failed: {e}")

        self.collect_usage(report)
        logger.info(
            f"Cleanup completed: {report.total_deleted} files deleted, "
            f"{report.freed_bytes} bytes freed"
        )
        return report

    def expire_local(self, artifact_class: str, now: datetime, report: RetentionReport):
        policy = self.config.retention
        ttl = policy.ttl_days(artifact_class, LOCAL)
        category = f"{artifact_class}_{LOCAL}"
        directory = self.config.directory_for(artifact_class)

        needs_replica = self.config.nas.enabled and policy.requires_replica(artifact_class)

        for artifact in list_artifacts(directory, self.config.prefix, artifact_class):
            if artifact.age_days(now) <= ttl:
                continue

            if needs_replica and not self.ensure_replica(artifact, now):
                logger.warning(
                    f"Keeping expired {artifact.name}: NAS replica not confirmed "
                    "and it would be the only copy"
                )
                report.kept_unreplicated.append(artifact.name)
                continue

            report.freed_bytes += remove_artifact(artifact.path)
            report.deleted[category] += 1
            logger.info(f"Deleted expired {artifact_class} backup: {artifact.name}")

    def ensure_replica(self, artifact, now: datetime) -> bool:
        """
        Confirm a NAS replica of an expired local artifact, copying it first
        when an earlier run could not. Artifacts already past the NAS TTL are
        not copied.
        """
        if not self.nas_mounted:
            return False
        if replica_confirmed(artifact, self.nas):
            return True
        if artifact.age_days(now) > self.config.retention.ttl_days(artifact.artifact_class, NAS):
            return False

        logger.info(f"Replicating {artifact.name} to NAS before expiring it locally")
        try:
            replicate_artifact(
                artifact,
                self.nas,
                retries=self.config.network_retries,
                retry_delay=self.config.network_retry_delay,
            )
        except (ReplicationError, MountError) as e:
            logger.warning(f"Could not replicate {artifact.name}: {e}")
            return False
        return replica_confirmed(artifact, self.nas)

    def expire_wal(self, now: datetime, report: RetentionReport):
        ttl = timedelta(days=self.config.retention.ttl_days(WAL, LOCAL))
        category = f"{WAL}_{LOCAL}"
        for segment in list_segments(self.config.wal_archive_dir):
            if now - segment.archived_at <= ttl:
                continue
            report.freed_bytes += segment.path.stat().st_size
            segment.path.unlink()
            report.deleted[category] += 1
        if report.deleted[category]:
            logger.info(f"Deleted {report.deleted[category]} expired WAL segments")

    def expire_nas(self, artifact_class: str, now: datetime, report: RetentionReport):
        category = f"{artifact_class}_{NAS}"
        if not self.nas_mounted:
            if self.config.nas.enabled:
                logger.warning(f"NAS not mounted, skipping {category} cleanup")
            report.skipped.append(category)
            return

        ttl = self.config.retention.ttl_days(artifact_class, NAS)
        directory = self.config.nas.directory_for(artifact_class)
        for artifact in list_artifacts(directory, self.config.prefix, artifact_class, tier=NAS):
            if artifact.age_days(now) <= ttl:
                continue
            report.freed_bytes += remove_artifact(artifact.path)
            report.deleted[category] += 1
            logger.info(f"Deleted expired NAS {artifact_class} backup: {artifact.name}")

    def remove_stale_partials(self, now: datetime, report: RetentionReport):
        """Remove temporary files left behind by killed runs."""
        cutoff = time.mktime((now - STALE_PARTIAL_AGE).timetuple())
        for directory in (self.config.full_dir, self.config.incremental_dir):
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if path.is_file() and path.name.endswith(PARTIAL_SUFFIX) and path.stat().st_mtime < cutoff:
                    report.freed_bytes += path.stat().st_size
                    path.unlink()
                    report.deleted["partial_files"] += 1
                    logger.info(f"Removed stale temporary file {path.name}")

    def collect_usage(self, report: RetentionReport):
        directories = {
            "full": self.config.full_dir,
            "incremental": self.config.incremental_dir,
            "wal": self.config.wal_archive_dir,
        }
        for name, directory in directories.items():
            try:
                report.usage[name] = LocalStorage(directory).usage()
            except OSError as e:
                logger.warning(f"Could not measure usage of {directory}: {e}")
                continue
            logger.info(
                f"Storage usage {name}: {report.usage[name]['files']} files, "
                f"{report.usage[name]['bytes']} bytes"
            )
