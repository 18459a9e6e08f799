"""
Compression, encryption and checksum utilities for the backup system.

This module provides utilities for:
1. Gzip compression (level 9 by default)
2. GnuPG public-key encryption to a named recipient
3. SHA-256 checksum calculation

Artifacts are compressed first, then encrypted, following the pattern:
pg_dump -> Gzip Compression -> GnuPG Encryption -> Checksum sidecar
"""

import gzip
import hashlib
import logging
import shutil
from pathlib import Path
from typing import List, Optional, Tuple

from .exceptions import CommandFailedError, CompressionError, EncryptionError
from .process import run_command

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB chunks
GPG_TIMEOUT = 60 * 60


def compress_file(
    input_path: str, output_path: Optional[str] = None, level: int = 9
) -> Tuple[str, int, int]:
    """
    Compress a file using gzip.

    Args:
        input_path: Path to the file to compress
        output_path: Path for the compressed file (defaults to input_path + '.gz')
        level: Gzip compression level (1-9)

    Returns:
        Tuple of (output_path, original_size, compressed_size)

    Raises:
        CompressionError: If compression fails
        FileNotFoundError: If input file doesn't exist
    """
    input_file = Path(input_path)
    if not input_file.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    if output_path is None:
        output_path = f"{input_path}.gz"
    output_file = Path(output_path)

    try:
        original_size = input_file.stat().st_size

        with open(input_file, "rb") as f_in:
            with gzip.open(output_file, "wb", compresslevel=level) as f_out:
                shutil.copyfileobj(f_in, f_out, CHUNK_SIZE)

        compressed_size = output_file.stat().st_size
    except OSError as e:
        logger.error(f"Failed to compress {input_path}: {e}")
        output_file.unlink(missing_ok=True)
        raise CompressionError(f"Compression failed: {e}") from e

    compression_ratio = (1 - compressed_size / original_size) * 100 if original_size > 0 else 0
    logger.info(
        f"Compressed {input_path} -> {output_path}: "
        f"{original_size} bytes -> {compressed_size} bytes "
        f"({compression_ratio:.1f}% reduction)"
    )

    return str(output_path), original_size, compressed_size


def decompress_file(input_path: str, output_path: Optional[str] = None) -> str:
    """
    Decompress a gzip-compressed file.

    Args:
        input_path: Path to the compressed file
        output_path: Path for the decompressed file (defaults to input_path without '.gz')

    Returns:
        Path to the decompressed file

    Raises:
        CompressionError: If decompression fails
    """
    if output_path is None:
        output_path = input_path[:-3] if input_path.endswith(".gz") else f"{input_path}.out"

    try:
        with gzip.open(input_path, "rb") as f_in:
            with open(output_path, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out, CHUNK_SIZE)
    except (OSError, EOFError) as e:
        logger.error(f"Failed to decompress {input_path}: {e}")
        Path(output_path).unlink(missing_ok=True)
        raise CompressionError(f"Decompression failed: {e}") from e

    logger.info(f"Decompressed {input_path} -> {output_path}")
    return str(output_path)


def calculate_checksum(file_path: str, algorithm: str = "sha256") -> str:
    """
    Calculate the checksum of a file.

    Args:
        file_path: Path to the file
        algorithm: Hash algorithm to use ('sha256', 'sha512', 'md5')

    Returns:
        Hexadecimal checksum string

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If algorithm is not supported
    """
    file = Path(file_path)
    if not file.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    if algorithm not in ("sha256", "sha512", "md5"):
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")
    hasher = hashlib.new(algorithm)

    with open(file, "rb") as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)

    checksum = hasher.hexdigest()
    logger.debug(f"Calculated {algorithm} checksum for {file_path}: {checksum}")
    return checksum


def gpg_key_available(recipient: str) -> bool:
    """
    Check whether the public key for ``recipient`` is in the keyring.

    Returns:
        True if ``gpg --list-keys`` knows the recipient, False otherwise
    """
    if not recipient:
        return False
    try:
        run_command(["gpg", "--batch", "--list-keys", recipient], timeout=30)
    except CommandFailedError as e:
        logger.warning(f"GPG key for {recipient} not available: {e}")
        return False
    return True


def encrypt_file(input_path: str, recipient: str, output_path: Optional[str] = None) -> str:
    """
    Encrypt a file to a GnuPG recipient and remove the plaintext.

    Args:
        input_path: Path to the file to encrypt
        recipient: Key id, fingerprint or e-mail of the recipient
        output_path: Path for the encrypted file (defaults to input_path + '.gpg')

    Returns:
        Path to the encrypted file

    Raises:
        EncryptionError: If gpg fails
    """
    if output_path is None:
        output_path = f"{input_path}.gpg"

    cmd = [
        "gpg",
        "--batch",
        "--yes",
        "--trust-model",
        "always",
        "--encrypt",
        "--recipient",
        recipient,
        "--output",
        str(output_path),
        str(input_path),
    ]
    try:
        run_command(cmd, timeout=GPG_TIMEOUT)
    except CommandFailedError as e:
        Path(output_path).unlink(missing_ok=True)
        logger.error(f"Failed to encrypt {input_path}: {e}")
        raise EncryptionError(f"Encryption failed: {e}") from e

    Path(input_path).unlink()
    logger.info(f"Encrypted {input_path} -> {output_path} for recipient {recipient}")
    return str(output_path)


def decrypt_file(input_path: str, output_path: Optional[str] = None) -> str:
    """
    Decrypt a GnuPG-encrypted file with the local secret keyring.

    Args:
        input_path: Path to the encrypted file
        output_path: Path for the decrypted file (defaults to input_path without '.gpg')

    Returns:
        Path to the decrypted file

    Raises:
        EncryptionError: If gpg fails
    """
    if output_path is None:
        output_path = input_path[:-4] if input_path.endswith(".gpg") else f"{input_path}.dec"

    cmd = ["gpg", "--batch", "--yes", "--quiet", "--decrypt", "--output", str(output_path), str(input_path)]
    try:
        run_command(cmd, timeout=GPG_TIMEOUT)
    except CommandFailedError as e:
        Path(output_path).unlink(missing_ok=True)
        logger.error(f"Failed to decrypt {input_path}: {e}")
        raise EncryptionError(f"Decryption failed: {e}") from e

    logger.info(f"Decrypted {input_path} -> {output_path}")
    return str(output_path)


def decode_artifact(artifact_path: str, work_dir: str) -> Tuple[str, List[str]]:
    """
    Peel the encryption and compression layers off an artifact.

    The artifact itself is never modified; intermediate files are written to
    ``work_dir``.

    Args:
        artifact_path: Path to a ``.sql[.gz][.gpg]`` artifact
        work_dir: Directory for intermediate files

    Returns:
        Tuple of (path to the plain dump, intermediate files the caller should remove)
    """
    current = Path(artifact_path)
    work = Path(work_dir)
    work.mkdir(parents=True, exist_ok=True)
    created = []

    if current.name.endswith(".gpg"):
        decrypted = work / current.name[:-4]
        decrypt_file(str(current), str(decrypted))
        created.append(str(decrypted))
        current = decrypted

    if current.name.endswith(".gz"):
        decompressed = work / current.name[:-3]
        decompress_file(str(current), str(decompressed))
        created.append(str(decompressed))
        current = decompressed

    return str(current), created
