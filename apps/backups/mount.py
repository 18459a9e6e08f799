"""
NAS mount session.

``MountSession`` is a small state machine over
``unmounted -> mounting -> mounted`` with ``degraded`` as the landing state for
any failure. Callers use it as a context manager so the share is released on
every exit path; a degraded session tells the pipeline to continue local-only.
"""

import logging
import os
import shutil
import socket
import time
from pathlib import Path

from .conf import NasSettings
from .exceptions import CommandFailedError, MountError
from .process import run_command
from .results import Degraded, StageResult, Success

logger = logging.getLogger(__name__)

UNMOUNTED = "unmounted"
MOUNTING = "mounting"
MOUNTED = "mounted"
DEGRADED = "degraded"

MOUNT_TIMEOUT = 60


class MountSession:
    """Idempotent acquire/release of the NAS share."""

    def __init__(
        self,
        nas: NasSettings,
        retries: int = 3,
        retry_delay: float = 5.0,
        probe_timeout: float = 5.0,
        sleep=time.sleep,
    ):
        self.nas = nas
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self.probe_timeout = probe_timeout
        self.state = UNMOUNTED
        self.last_error = None
        self._sleep = sleep
        self._mounted_by_us = False

    @classmethod
    def from_config(cls, config, **kwargs):
        return cls(
            config.nas,
            retries=config.network_retries,
            retry_delay=config.network_retry_delay,
            probe_timeout=config.nas_probe_timeout,
            **kwargs,
        )

    @property
    def mount_path(self) -> Path:
        return self.nas.mount_path

    @property
    def is_mounted(self) -> bool:
        return self.state == MOUNTED

    def probe(self) -> bool:
        """Check TCP reachability of the NAS service port (445 CIFS, 2049 NFS)."""
        try:
            with socket.create_connection((self.nas.host, self.nas.port), timeout=self.probe_timeout):
                return True
        except OSError as e:
            logger.warning(f"NAS {self.nas.host}:{self.nas.port} not reachable: {e}")
            return False

    def _mount_command(self):
        if self.nas.protocol == "cifs":
            options = [
                f"username={self.nas.username}",
                "uid=0",
                "gid=0",
                f"file_mode={self.nas.file_mode}",
                f"dir_mode={self.nas.dir_mode}",
            ]
            if self.nas.domain:
                options.append(f"domain={self.nas.domain}")
            if self.nas.smb_version:
                options.append(f"vers={self.nas.smb_version}")
            cmd = ["mount", "-t", "cifs", self.nas.remote, str(self.mount_path), "-o", ",".join(options)]
            # mount.cifs reads the password from PASSWD so it never shows up in `ps`
            return cmd, {"PASSWD": self.nas.password}

        cmd = ["mount", "-t", "nfs", self.nas.remote, str(self.mount_path)]
        if self.nas.nfs_options:
            cmd.extend(["-o", self.nas.nfs_options])
        return cmd, None

    def _degrade(self, reason) -> StageResult:
        self.state = DEGRADED
        self.last_error = reason
        logger.warning(f"NAS unavailable, continuing local-only: {reason}")
        return Degraded(reason)

    def acquire(self) -> StageResult:
        """
        Bring the share online.

        Returns:
            Success when mounted (including when it already was), Degraded
            when the NAS is disabled, unreachable or the mount fails
        """
        if self.state == MOUNTED:
            return Success(self.mount_path, message="NAS already mounted")

        if not self.nas.enabled or not self.nas.host:
            self.state = DEGRADED
            self.last_error = "NAS backup disabled"
            logger.info("NAS backup disabled, skipping NAS mount")
            return Degraded("NAS backup disabled")

        self.state = MOUNTING
        logger.info(f"Mounting NAS share {self.nas.remote} at {self.mount_path}")

        if os.path.ismount(self.mount_path):
            self.state = MOUNTED
            self._mounted_by_us = False
            logger.info(f"NAS already mounted at {self.mount_path}")
            return self._with_space_check(Success(self.mount_path, message="NAS already mounted"))

        reachable = False
        for attempt in range(1, self.retries + 1):
            if self.probe():
                reachable = True
                break
            if attempt < self.retries:
                self._sleep(self.retry_delay)
        if not reachable:
            return self._degrade(f"NAS host {self.nas.host} unreachable on port {self.nas.port}")

        try:
            self.mount_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return self._degrade(f"Cannot create mount point {self.mount_path}: {e}")

        cmd, env = self._mount_command()
        error = None
        for attempt in range(1, self.retries + 1):
            try:
                run_command(cmd, timeout=MOUNT_TIMEOUT, env=env)
                error = None
                break
            except CommandFailedError as e:
                error = e
                logger.warning(f"NAS mount attempt {attempt}/{self.retries} failed: {e}")
                if attempt < self.retries:
                    self._sleep(self.retry_delay)
        if error is not None:
            return self._degrade(f"Failed to mount {self.nas.remote}: {error}")

        self.state = MOUNTED
        self._mounted_by_us = True
        self.last_error = None
        logger.info(f"NAS mounted successfully at {self.mount_path}")
        return self._with_space_check(Success(self.mount_path, message="NAS mounted"))

    def _with_space_check(self, result: StageResult) -> StageResult:
        try:
            free = self.free_bytes()
        except MountError as e:
            logger.warning(str(e))
            return result
        if free < self.nas.min_free_bytes:
            warning = (
                f"NAS free space low: {free} bytes available, "
                f"threshold {self.nas.min_free_bytes} bytes"
            )
            logger.warning(warning)
            result.warnings.append(warning)
        return result

    def free_bytes(self) -> int:
        try:
            return shutil.disk_usage(self.mount_path).free
        except OSError as e:
            raise MountError(f"Cannot read free space of {self.mount_path}: {e}") from e

    def release(self):
        """Unmount if this session mounted the share; a no-op in any other state."""
        if self.state != MOUNTED:
            logger.debug(f"NAS release skipped (state: {self.state})")
            return

        if self._mounted_by_us:
            logger.info("Unmounting NAS")
            try:
                run_command(["umount", str(self.mount_path)], timeout=MOUNT_TIMEOUT)
            except CommandFailedError as e:
                self.last_error = str(e)
                logger.warning(f"Failed to unmount NAS: {e}")

        self._mounted_by_us = False
        self.state = UNMOUNTED

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
