"""
WAL archiver.

Bundles every archived WAL segment newer than the latest full backup into a
single ``incremental`` artifact (``.tar.gz``), published like a full backup.
Segments are only read, never modified.
"""

import logging
import re
import tarfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .artifacts import PARTIAL_SUFFIX, BackupArtifact, build_filename, commit_artifact, latest_artifact
from .conf import FULL, INCREMENTAL, BackupConfig
from .exceptions import CompressionError, PreconditionError
from .full_backup import ensure_free_space

logger = logging.getLogger(__name__)

# 24-hex segment names as written by archive_command, optionally with a .wal suffix,
# plus timeline history and backup label files.
WAL_NAME_RE = re.compile(
    r"^(?:[0-9A-F]{24}(?:\.[0-9A-F]{8}\.backup)?|[0-9A-F]{8}\.history)(?:\.wal)?$|^.+\.wal$"
)


@dataclass(frozen=True)
class WALSegment:
    name: str
    path: Path
    archived_at: datetime

    @property
    def sequence(self) -> str:
        return self.name[:-4] if self.name.endswith(".wal") else self.name


def list_segments(wal_archive_dir) -> List[WALSegment]:
    """Archived segments ordered by archive time, then name."""
    wal_archive_dir = Path(wal_archive_dir)
    if not wal_archive_dir.is_dir():
        return []

    segments = []
    for entry in wal_archive_dir.iterdir():
        if not entry.is_file() or not WAL_NAME_RE.match(entry.name):
            continue
        archived_at = datetime.fromtimestamp(entry.stat().st_mtime)
        segments.append(WALSegment(name=entry.name, path=entry, archived_at=archived_at))

    segments.sort(key=lambda s: (s.archived_at, s.name))
    return segments


def segments_between(segments, after: datetime, until: Optional[datetime] = None) -> List[WALSegment]:
    """Segments archived strictly after ``after`` and, if given, at or before ``until``."""
    return [
        s for s in segments if s.archived_at > after and (until is None or s.archived_at <= until)
    ]


class WalArchiver:
    def __init__(self, config: BackupConfig, now=None):
        self.config = config
        self.now = now or datetime.now

    def base_backup(self) -> Optional[BackupArtifact]:
        return latest_artifact(self.config.full_dir, self.config.prefix, FULL)

    def pending_segments(self, base: BackupArtifact) -> List[WALSegment]:
        return segments_between(list_segments(self.config.wal_archive_dir), base.timestamp)

    def produce(self, base: Optional[BackupArtifact] = None) -> Optional[BackupArtifact]:
        """
        Bundle the segments archived since ``base`` (default: latest full backup).

        Returns:
            The committed incremental artifact, or None when there are no new segments

        Raises:
            PreconditionError: If no full backup exists
        """
        config = self.config
        base = base or self.base_backup()
        if base is None:
            raise PreconditionError("No full backup found; an incremental backup needs a base")

        logger.info(f"Base backup: {base.path}")
        segments = self.pending_segments(base)
        if not segments:
            logger.info(f"No WAL segments archived since {base.timestamp:%Y-%m-%d %H:%M:%S}")
            return None

        ensure_free_space(config.incremental_dir, config.min_free_bytes)

        final_path = config.incremental_dir / build_filename(
            config.prefix, INCREMENTAL, self.now(), "tar", compressed=True
        )
        work_path = Path(f"{final_path}{PARTIAL_SUFFIX}")
        logger.info(f"Creating incremental backup: {final_path.name} ({len(segments)} WAL segments)")

        try:
            try:
                with tarfile.open(work_path, "w:gz", compresslevel=config.compression_level) as tar:
                    for segment in segments:
                        tar.add(segment.path, arcname=segment.name)
            except (OSError, tarfile.TarError) as e:
                raise CompressionError(f"Failed to bundle WAL segments: {e}") from e

            artifact = commit_artifact(work_path, final_path, config.encryption_recipient)
        finally:
            for path in (work_path, Path(f"{final_path}.gpg{PARTIAL_SUFFIX}")):
                if path.exists():
                    path.unlink()

        logger.info(f"Incremental backup completed: {artifact.path} ({artifact.size} bytes)")
        return artifact
