"""
Thin wrapper around ``subprocess.run`` for the external tools the pipeline drives
(pg_dump, pg_restore, pg_isready, gpg, mount, umount, docker).
"""

import logging
import os
import subprocess
from typing import IO, Dict, List, Optional

from .exceptions import CommandFailedError

logger = logging.getLogger(__name__)


def run_command(
    cmd: List[str],
    timeout: Optional[float] = None,
    env: Optional[Dict[str, str]] = None,
    stdin: Optional[IO] = None,
    stdout: Optional[IO] = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """
    Run an external command with captured stderr and a bounded timeout.

    Args:
        cmd: Command and arguments
        timeout: Seconds before the command is killed
        env: Extra environment variables, merged over os.environ
        stdin: Optional file object streamed to the command
        stdout: Optional file object receiving stdout (captured otherwise)
        check: Raise CommandFailedError on non-zero exit

    Returns:
        The completed process

    Raises:
        CommandFailedError: If the command times out, cannot be started,
            or exits non-zero while ``check`` is set
    """
    full_env = None
    if env:
        full_env = os.environ.copy()
        full_env.update(env)

    logger.debug(f"Running: {' '.join(cmd)}")

    try:
        result = subprocess.run(
            cmd,
            env=full_env,
            stdin=stdin,
            stdout=stdout if stdout is not None else subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=stdout is None,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        logger.error(f"{cmd[0]} timed out after {timeout} seconds")
        raise CommandFailedError(cmd, None, f"timed out after {timeout} seconds") from e
    except OSError as e:
        logger.error(f"Failed to start {cmd[0]}: {e}")
        raise CommandFailedError(cmd, 127, str(e)) from e

    if check and result.returncode != 0:
        stderr = result.stderr
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", errors="replace")
        raise CommandFailedError(cmd, result.returncode, stderr)

    return result
