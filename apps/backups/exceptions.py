"""
Exception hierarchy for the backup pipeline.

Components raise these; the run coordinator turns them into tagged results,
notifications and process exit codes.
"""


class BackupError(Exception):
    """Base class for every backup pipeline failure."""

    pass


class PreconditionError(BackupError):
    """Raised when a run cannot start; nothing has been written yet."""

    pass


class DatabaseNotReadyError(PreconditionError):
    """Raised when the database does not report ready within the polling budget."""

    pass


class InsufficientSpaceError(PreconditionError):
    """Raised when the destination filesystem is below the free-space threshold."""

    pass


class IntegrityError(BackupError):
    """Raised when an artifact fails an integrity check."""

    pass


class ArtifactTooSmallError(IntegrityError):
    """Raised when a dump is below the minimum sanity size."""

    pass


class ChecksumMismatchError(IntegrityError):
    """Raised when an artifact no longer matches its checksum sidecar."""

    pass


class RestoreError(BackupError):
    """Raised when a restore (trial or real) fails."""

    pass


class CompressionError(BackupError):
    """Raised when compression or decompression fails."""

    pass


class EncryptionError(BackupError):
    """Raised when encryption or decryption fails."""

    pass


class MountError(BackupError):
    """Raised when the NAS share cannot be probed, mounted or unmounted."""

    pass


class ReplicationError(BackupError):
    """Raised when an artifact cannot be copied to the NAS tier."""

    pass


class LockContentionError(BackupError):
    """Raised when another live pipeline holds the run lock."""

    def __init__(self, lock_path, pid):
        self.lock_path = lock_path
        self.pid = pid
        super().__init__(f"Backup already running (pid {pid}, lock {lock_path})")


class NoSuitableBackupError(BackupError):
    """Raised when no full backup exists strictly before a recovery target."""

    pass


class InvalidRecoveryTargetError(BackupError):
    """Raised when a recovery target cannot be parsed or lies in the future."""

    pass


class CommandFailedError(BackupError):
    """Raised when an external tool exits non-zero or times out."""

    def __init__(self, command, returncode=None, stderr=""):
        self.command = command
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        name = command[0] if command else "command"
        if returncode is None:
            message = f"{name} timed out"
        else:
            message = f"{name} exited with code {returncode}"
        if self.stderr:
            message = f"{message}: {self.stderr}"
        super().__init__(message)
