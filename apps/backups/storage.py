"""
Storage backends for the backup system.

This module provides two storage backends:
1. LocalStorage - Local disk holding the primary copy of every artifact
2. NasStorage - The mounted network share holding the longer-lived replica

Both implement a common interface with upload, download, exists, delete and
get_size. NasStorage refuses every operation while its mount session is not
``mounted``.
"""

import logging
import os
import shutil
import time
from pathlib import Path
from typing import Dict, Optional

from .artifacts import PARTIAL_SUFFIX, SIDECAR_SUFFIX, BackupArtifact, read_sidecar
from .conf import LOCAL, NAS
from .exceptions import MountError, ReplicationError

logger = logging.getLogger(__name__)


class StorageBackend:
    """Base class for storage backends."""

    tier = None

    def upload(self, local_path: str, remote_path: str) -> bool:
        """
        Upload a file to the storage backend.

        Args:
            local_path: Path to the local file to upload
            remote_path: Destination path in the storage backend

        Returns:
            True if upload succeeded, False otherwise
        """
        raise NotImplementedError

    def download(self, remote_path: str, local_path: str) -> bool:
        """
        Download a file from the storage backend.

        Args:
            remote_path: Path to the file in the storage backend
            local_path: Destination path for the downloaded file

        Returns:
            True if download succeeded, False otherwise
        """
        raise NotImplementedError

    def exists(self, remote_path: str) -> bool:
        raise NotImplementedError

    def delete(self, remote_path: str) -> bool:
        raise NotImplementedError

    def get_size(self, remote_path: str) -> Optional[int]:
        raise NotImplementedError


class LocalStorage(StorageBackend):
    """
    Filesystem storage rooted at ``base_path``.

    Copies go through a ``.partial`` temporary name and are renamed into
    place, so a reader never sees a half-written file at its final name.
    """

    tier = LOCAL

    def __init__(self, base_path):
        self.base_path = Path(base_path)
        logger.debug(f"{self.__class__.__name__} initialized with base_path: {self.base_path}")

    def _get_full_path(self, remote_path: str) -> Path:
        """Get the full local path for a remote path."""
        return self.base_path / remote_path

    def _prepare_destination(self, destination: Path):
        destination.parent.mkdir(parents=True, exist_ok=True)

    def _finalize(self, destination: Path):
        pass

    def upload(self, local_path: str, remote_path: str) -> bool:
        """
        Copy a file into the store.

        Args:
            local_path: Path to the source file
            remote_path: Relative path within the store

        Returns:
            True if copy succeeded, False otherwise
        """
        destination = self._get_full_path(remote_path)
        temp = destination.with_name(destination.name + PARTIAL_SUFFIX)
        try:
            self._prepare_destination(destination)
            shutil.copyfile(local_path, temp)
            os.replace(temp, destination)
            self._finalize(destination)
        except OSError as e:
            logger.error(f"{self.__class__.__name__}: Failed to upload {local_path} to {remote_path}: {e}")
            try:
                temp.unlink(missing_ok=True)
            except OSError:
                logger.warning(f"Could not remove temporary file {temp}")
            return False

        logger.info(f"{self.__class__.__name__}: Uploaded {local_path} to {destination}")
        return True

    def download(self, remote_path: str, local_path: str) -> bool:
        source = self._get_full_path(remote_path)
        if not source.exists():
            logger.error(f"{self.__class__.__name__}: File not found: {source}")
            return False
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, local_path)
        except OSError as e:
            logger.error(f"{self.__class__.__name__}: Failed to download {remote_path}: {e}")
            return False

        logger.info(f"{self.__class__.__name__}: Downloaded {source} to {local_path}")
        return True

    def exists(self, remote_path: str) -> bool:
        full_path = self._get_full_path(remote_path)
        return full_path.is_file()

    def delete(self, remote_path: str) -> bool:
        full_path = self._get_full_path(remote_path)
        try:
            if not full_path.exists():
                logger.warning(f"{self.__class__.__name__}: File not found for deletion: {full_path}")
                return True  # Already deleted
            full_path.unlink()
        except OSError as e:
            logger.error(f"{self.__class__.__name__}: Failed to delete {remote_path}: {e}")
            return False

        logger.info(f"{self.__class__.__name__}: Deleted {full_path}")
        return True

    def get_size(self, remote_path: str) -> Optional[int]:
        full_path = self._get_full_path(remote_path)
        try:
            return full_path.stat().st_size
        except OSError:
            return None

    def free_bytes(self) -> int:
        return shutil.disk_usage(self.base_path).free

    def usage(self) -> Dict[str, int]:
        """Bytes and file count stored under ``base_path``."""
        total = 0
        files = 0
        if self.base_path.is_dir():
            for path in self.base_path.rglob("*"):
                if path.is_file():
                    total += path.stat().st_size
                    files += 1
        return {"bytes": total, "files": files}


class NasStorage(LocalStorage):
    """Storage on the mounted NAS share; only usable while the session is mounted."""

    tier = NAS

    def __init__(self, session):
        self.session = session
        super().__init__(session.mount_path)

    def _ensure_mounted(self):
        if not self.session.is_mounted:
            raise MountError(f"NAS not mounted (state: {self.session.state})")

    def _prepare_destination(self, destination: Path):
        self._ensure_mounted()
        destination.parent.mkdir(parents=True, exist_ok=True)

    def _finalize(self, destination: Path):
        try:
            os.chmod(destination, int(self.session.nas.file_mode, 8))
        except (OSError, ValueError) as e:
            # CIFS mounts apply file_mode themselves and may reject chmod.
            logger.debug(f"chmod on {destination} ignored: {e}")

    def upload(self, local_path: str, remote_path: str) -> bool:
        try:
            self._ensure_mounted()
        except MountError as e:
            logger.error(f"NasStorage: {e}")
            return False
        return super().upload(local_path, remote_path)

    def delete(self, remote_path: str) -> bool:
        self._ensure_mounted()
        return super().delete(remote_path)

    def exists(self, remote_path: str) -> bool:
        self._ensure_mounted()
        return super().exists(remote_path)

    def get_size(self, remote_path: str) -> Optional[int]:
        self._ensure_mounted()
        return super().get_size(remote_path)

    def relative_path(self, artifact: BackupArtifact) -> str:
        directory = self.session.nas.directory_for(artifact.artifact_class)
        return str((directory / artifact.name).relative_to(self.base_path))


def replicate_artifact(
    artifact: BackupArtifact, nas: NasStorage, retries: int = 3, retry_delay: float = 5.0, sleep=time.sleep
) -> BackupArtifact:
    """
    Copy an artifact and its sidecar to the NAS and verify the copy.

    Each attempt copies through a temporary name and compares sizes; the
    sidecar follows only once the artifact itself is confirmed.

    Returns:
        The replica as a BackupArtifact in the ``nas`` tier

    Raises:
        ReplicationError: If every attempt within the retry budget fails
    """
    remote_path = nas.relative_path(artifact)
    last_error = "not attempted"

    for attempt in range(1, max(1, retries) + 1):
        if not nas.session.is_mounted:
            raise ReplicationError(f"NAS not mounted, cannot replicate {artifact.name}")

        if nas.upload(str(artifact.path), remote_path):
            remote_size = nas.get_size(remote_path)
            if remote_size == artifact.size:
                if artifact.sidecar.exists():
                    if not nas.upload(str(artifact.sidecar), f"{remote_path}{SIDECAR_SUFFIX}"):
                        last_error = "checksum sidecar copy failed"
                        logger.warning(f"NAS replication attempt {attempt} of {artifact.name}: {last_error}")
                        if attempt < retries:
                            sleep(retry_delay)
                        continue
                logger.info(f"NAS copy verified: {artifact.name} ({remote_size} bytes)")
                replica = BackupArtifact.from_path(nas.base_path / remote_path, tier=NAS)
                replica.checksum = artifact.checksum or read_sidecar(artifact.path)
                return replica
            last_error = f"size mismatch (local {artifact.size}, NAS {remote_size})"
        else:
            last_error = "copy failed"

        logger.warning(f"NAS replication attempt {attempt} of {artifact.name}: {last_error}")
        if attempt < retries:
            sleep(retry_delay)

    raise ReplicationError(f"Failed to replicate {artifact.name} to NAS: {last_error}")


def replica_confirmed(artifact: BackupArtifact, nas: NasStorage) -> bool:
    """
    Whether the NAS holds a verified copy of a local artifact.

    The replica must exist with the same size, and when both sides carry a
    sidecar the recorded digests must agree.
    """
    if not nas.session.is_mounted:
        return False

    remote_path = nas.relative_path(artifact)
    if nas.get_size(remote_path) != artifact.size:
        return False

    local_digest = read_sidecar(artifact.path)
    remote_digest = read_sidecar(nas.base_path / remote_path)
    if local_digest and remote_digest and local_digest != remote_digest:
        return False
    return True
