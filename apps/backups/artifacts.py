"""
Backup artifacts, their naming scheme and checksum sidecars.

Artifact names follow ``{prefix}_{class}_backup_{YYYYMMDD_HHMMSS}.{ext}[.gz][.gpg]``;
the sidecar is the artifact path with ``.sha256`` appended and holds a
``sha256sum``-compatible line.
"""

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .conf import ARTIFACT_CLASSES, LOCAL
from .encryption import calculate_checksum, encrypt_file, gpg_key_available
from .exceptions import ChecksumMismatchError

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
SIDECAR_SUFFIX = ".sha256"
PARTIAL_SUFFIX = ".partial"

UNVERIFIED = "unverified"
PASSED = "passed"
FAILED = "failed"

ARTIFACT_NAME_RE = re.compile(
    r"^(?P<prefix>.+)_(?P<artifact_class>full|incremental)_backup_"
    r"(?P<timestamp>\d{8}_\d{6})\.(?P<extension>.+)$"
)


def build_filename(
    prefix: str,
    artifact_class: str,
    timestamp: datetime,
    extension: str,
    compressed: bool = False,
    encrypted: bool = False,
) -> str:
    """Compose the canonical artifact file name."""
    if artifact_class not in ARTIFACT_CLASSES:
        raise ValueError(f"Unknown artifact class: {artifact_class}")
    name = f"{prefix}_{artifact_class}_backup_{timestamp.strftime(TIMESTAMP_FORMAT)}.{extension}"
    if compressed:
        name += ".gz"
    if encrypted:
        name += ".gpg"
    return name


def sidecar_path(artifact_path) -> Path:
    return Path(f"{artifact_path}{SIDECAR_SUFFIX}")


@dataclass
class BackupArtifact:
    """One committed backup file in a storage tier."""

    artifact_class: str
    timestamp: datetime
    path: Path
    size: int
    compressed: bool = False
    encrypted: bool = False
    tier: str = LOCAL
    checksum: Optional[str] = None
    verification_status: str = UNVERIFIED

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def created_at(self) -> datetime:
        return self.timestamp

    @property
    def sidecar(self) -> Path:
        return sidecar_path(self.path)

    def age_days(self, now: datetime) -> float:
        return (now - self.timestamp).total_seconds() / 86400

    @classmethod
    def from_path(cls, path, prefix: Optional[str] = None, tier: str = LOCAL):
        """
        Build an artifact from an existing file, or return None when the name
        is not an artifact name (sidecars, partial files, foreign files).
        """
        path = Path(path)
        if path.name.endswith(SIDECAR_SUFFIX) or path.name.endswith(PARTIAL_SUFFIX):
            return None

        match = ARTIFACT_NAME_RE.match(path.name)
        if not match or (prefix is not None and match.group("prefix") != prefix):
            return None

        try:
            timestamp = datetime.strptime(match.group("timestamp"), TIMESTAMP_FORMAT)
            size = path.stat().st_size
        except (ValueError, OSError):
            return None

        suffixes = match.group("extension").split(".")
        return cls(
            artifact_class=match.group("artifact_class"),
            timestamp=timestamp,
            path=path,
            size=size,
            compressed="gz" in suffixes,
            encrypted=suffixes[-1] == "gpg",
            tier=tier,
        )


def list_artifacts(
    directory, prefix: str, artifact_class: Optional[str] = None, tier: str = LOCAL
) -> List[BackupArtifact]:
    """
    List artifacts in ``directory``, oldest first.

    A missing directory yields an empty list.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []

    artifacts = []
    for entry in directory.iterdir():
        if not entry.is_file():
            continue
        artifact = BackupArtifact.from_path(entry, prefix=prefix, tier=tier)
        if artifact is None:
            continue
        if artifact_class and artifact.artifact_class != artifact_class:
            continue
        artifacts.append(artifact)

    artifacts.sort(key=lambda a: (a.timestamp, a.name))
    return artifacts


def latest_artifact(directory, prefix: str, artifact_class: str, tier: str = LOCAL):
    artifacts = list_artifacts(directory, prefix, artifact_class, tier)
    return artifacts[-1] if artifacts else None


def write_sidecar(artifact_path) -> str:
    """
    Compute the artifact's SHA-256 and persist it next to the artifact.

    Returns:
        The hex digest written
    """
    artifact_path = Path(artifact_path)
    digest = calculate_checksum(str(artifact_path))
    target = sidecar_path(artifact_path)
    temp = Path(f"{target}{PARTIAL_SUFFIX}")
    temp.write_text(f"{digest}  {artifact_path.name}\n")
    os.replace(temp, target)
    logger.info(f"Checksum written: {target.name} ({digest})")
    return digest


def read_sidecar(artifact_path) -> Optional[str]:
    """Return the digest recorded in the sidecar, or None when there is none."""
    target = sidecar_path(artifact_path)
    if not target.exists():
        return None
    content = target.read_text().strip()
    if not content:
        return None
    return content.split()[0].lower()


def verify_sidecar(artifact_path, required: bool = False) -> bool:
    """
    Check an artifact against its sidecar.

    Args:
        artifact_path: Path of the artifact
        required: Treat a missing sidecar as a mismatch

    Returns:
        True when the sidecar matches, False when there is no sidecar

    Raises:
        ChecksumMismatchError: If the bytes no longer match the sidecar
    """
    expected = read_sidecar(artifact_path)
    if expected is None:
        if required:
            raise ChecksumMismatchError(f"Checksum sidecar missing for {artifact_path}")
        logger.warning(f"No checksum sidecar for {artifact_path}")
        return False

    actual = calculate_checksum(str(artifact_path))
    if actual != expected:
        logger.error(f"Checksum mismatch for {artifact_path}: expected {expected}, got {actual}")
        raise ChecksumMismatchError(
            f"Checksum mismatch for {Path(artifact_path).name}: expected {expected}, got {actual}"
        )

    logger.info(f"Checksum verified for {artifact_path}")
    return True


def remove_artifact(artifact_path) -> int:
    """
    Delete an artifact together with its sidecar.

    Returns:
        Bytes freed
    """
    freed = 0
    for target in (Path(artifact_path), sidecar_path(artifact_path)):
        if target.exists():
            freed += target.stat().st_size
            target.unlink()
    return freed


def commit_artifact(work_path, final_path, encryption_recipient: str = "") -> BackupArtifact:
    """
    Publish a finished temporary file under its final artifact name.

    The file is encrypted first when a recipient is configured and its key is
    in the keyring. Its checksum is computed and the sidecar staged before
    anything is renamed, so a failure leaves no artifact without a sidecar
    under the final name.

    Args:
        work_path: Temporary file holding the finished (compressed) dump
        final_path: Artifact path without the ``.gpg`` suffix
        encryption_recipient: GnuPG recipient, empty to skip encryption

    Returns:
        The committed artifact with its checksum set
    """
    work_path = Path(work_path)
    final_path = Path(final_path)
    encrypted_work = None

    if encryption_recipient:
        if gpg_key_available(encryption_recipient):
            encrypted_work = Path(f"{final_path}.gpg{PARTIAL_SUFFIX}")
            encrypt_file(str(work_path), encryption_recipient, str(encrypted_work))
            work_path = encrypted_work
            final_path = Path(f"{final_path}.gpg")
        else:
            logger.warning(
                f"GPG key for {encryption_recipient} not found, storing {final_path.name} unencrypted"
            )

    sidecar = sidecar_path(final_path)
    sidecar_temp = Path(f"{sidecar}{PARTIAL_SUFFIX}")
    try:
        digest = calculate_checksum(str(work_path))
        sidecar_temp.write_text(f"{digest}  {final_path.name}\n")
        os.replace(work_path, final_path)
        try:
            os.replace(sidecar_temp, sidecar)
        except OSError:
            final_path.unlink(missing_ok=True)
            raise
    except Exception:
        sidecar_temp.unlink(missing_ok=True)
        if encrypted_work is not None:
            encrypted_work.unlink(missing_ok=True)
        raise
    logger.info(f"Checksum written: {sidecar.name} ({digest})")

    artifact = BackupArtifact.from_path(final_path)
    if artifact is None:
        raise ValueError(f"Not an artifact name: {final_path.name}")
    artifact.checksum = digest
    logger.info(f"Committed {artifact.name} ({artifact.size} bytes)")
    return artifact
