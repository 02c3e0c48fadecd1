"""Utility functions for PyGSync."""

import hashlib
from pathlib import Path

# =============================================================================
# Constants for sync operations
# =============================================================================

# Name of the per-directory ignore file
DEFAULT_IGNORE_FILE_NAME: str = ".gitignore"

# Number of parallel workers used by the executor
DEFAULT_WORKERS: int = 4

# Remote requests admitted per second (0 disables rate limiting)
DEFAULT_RATE_LIMIT: float = 10.0

# Retry configuration for transient errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds

# Chunk size used when hashing and streaming file content (1 MB)
DEFAULT_READ_CHUNK_SIZE: int = 1024 * 1024

# Key under which the content fingerprint is stored on remote objects
FINGERPRINT_PROPERTY: str = "pygsync_sha256"


# =============================================================================
# Hash calculation utilities
# =============================================================================


def file_fingerprint(path: Path, chunk_size: int = DEFAULT_READ_CHUNK_SIZE) -> str:
    """Calculate the content fingerprint of a file.

    Args:
        path: Path to the file
        chunk_size: Number of bytes read per iteration

    Returns:
        Hex encoded SHA-256 digest of the file content

    Raises:
        OSError: If the file cannot be read

    Examples:
        >>> file_fingerprint(Path("empty.txt"))  # doctest: +SKIP
        'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
    return hasher.hexdigest()


def content_fingerprint(content: bytes) -> str:
    """Calculate the fingerprint of in-memory content."""
    return hashlib.sha256(content).hexdigest()


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


def mask_secret(value: str, visible: int = 4) -> str:
    """Mask a secret for display, keeping only the last characters.

    Examples:
        >>> mask_secret("abcdefgh")
        '****efgh'
        >>> mask_secret("abc")
        '***'
    """
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]
