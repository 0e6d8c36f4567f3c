"""Utility functions for the SpeleoDB client."""

import hashlib
import re
from datetime import date, datetime
from pathlib import Path
from typing import Optional, Union

# =============================================================================
# Constants
# =============================================================================

DEFAULT_INSTANCE: str = "www.speleoDB.org"
DEFAULT_PROJECT_DIR: str = "~/.ariane"

# Retry configuration for transient errors
DEFAULT_MAX_RETRIES: int = 3
DEFAULT_RETRY_DELAY: float = 1.0  # seconds

# Timeouts (seconds)
DEFAULT_CONNECT_TIMEOUT: float = 30.0
DEFAULT_REQUEST_TIMEOUT: float = 60.0
DEFAULT_DOWNLOAD_TIMEOUT: float = 120.0

# The server does not report lease expiry, so the client assumes this length
DEFAULT_LEASE_MINUTES: int = 15

ARCHIVE_EXTENSION: str = "tml"
SOFTWARE_NAME: str = "ARIANE"

# Read size for checksums and streamed transfers
TRANSFER_CHUNK_SIZE: int = 64 * 1024

HTTP_PREFIX = "http://"
HTTPS_PREFIX = "https://"

# localhost, loopback and RFC 1918 private ranges, with an optional port
LOCAL_ADDRESS_PATTERN = re.compile(
    r"^(localhost"
    r"|127\.\d+\.\d+\.\d+"
    r"|10\.\d+\.\d+\.\d+"
    r"|172\.(1[6-9]|2\d|3[01])\.\d+\.\d+"
    r"|192\.168\.\d+\.\d+)"
    r"(:\d+)?$",
    re.IGNORECASE,
)

OAUTH_TOKEN_PATTERN = re.compile(r"^[a-f0-9]{40}$")

_SCHEME_PATTERN = re.compile(r"^https?://", re.IGNORECASE)


# =============================================================================
# Instance URL utilities
# =============================================================================


def strip_scheme(value: str) -> str:
    """Remove surrounding whitespace, an http(s) scheme and trailing slashes.

    Examples:
        >>> strip_scheme("https://www.speleodb.org/")
        'www.speleodb.org'
        >>> strip_scheme("HTTP://localhost:8000//")
        'localhost:8000'
    """
    stripped = _SCHEME_PATTERN.sub("", value.strip())
    return stripped.rstrip("/")


def is_local_address(host: str) -> bool:
    """Check if a host (with optional port and path) is a local/private address.

    Examples:
        >>> is_local_address("localhost:8000")
        True
        >>> is_local_address("172.20.1.4")
        True
        >>> is_local_address("172.32.1.4")
        False
        >>> is_local_address("www.speleodb.org")
        False
    """
    authority = strip_scheme(host).split("/", 1)[0]
    return bool(LOCAL_ADDRESS_PATTERN.match(authority))


def normalize_instance_url(value: Optional[str]) -> str:
    """Normalize a user supplied SpeleoDB host into a URL with an explicit scheme.

    Any scheme given by the user is replaced: local and private addresses use
    ``http://``, everything else ``https://``. Trailing slashes are removed and
    the host keeps its case.

    Args:
        value: Host string, e.g. "www.speleodb.org" or "http://localhost:8000/"

    Returns:
        Normalized URL string

    Raises:
        ValueError: If the value is empty

    Examples:
        >>> normalize_instance_url("stage.speleodb.org/")
        'https://stage.speleodb.org'
        >>> normalize_instance_url("https://192.168.1.10:8000")
        'http://192.168.1.10:8000'
    """
    if value is None or not strip_scheme(value):
        raise ValueError("Instance URL cannot be empty")

    bare = strip_scheme(value)
    prefix = HTTP_PREFIX if is_local_address(bare) else HTTPS_PREFIX
    return prefix + bare


# =============================================================================
# Checksum utilities
# =============================================================================


def calculate_checksum(data: bytes) -> str:
    """Calculate the SHA-256 checksum of a byte string as lowercase hex."""
    return hashlib.sha256(data).hexdigest()


def calculate_file_checksum(
    path: Union[str, Path], chunk_size: int = TRANSFER_CHUNK_SIZE
) -> str:
    """Calculate the SHA-256 checksum of a file without loading it in memory.

    Args:
        path: Path of the file
        chunk_size: Number of bytes read per iteration

    Returns:
        64 character lowercase hex digest
    """
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


# =============================================================================
# Validation utilities
# =============================================================================


def is_valid_oauth_token(token: Optional[str]) -> bool:
    """Check that an OAuth token looks like a SpeleoDB token (40 hex chars).

    Examples:
        >>> is_valid_oauth_token("0123456789abcdef0123456789abcdef01234567")
        True
        >>> is_valid_oauth_token("not-a-token")
        False
    """
    if not token:
        return False
    return bool(OAUTH_TOKEN_PATTERN.match(token))


# =============================================================================
# Version utilities
# =============================================================================


def _version_parts(version: str) -> list[int]:
    parts = []
    for piece in version.strip().lstrip("vV").split("."):
        digits = re.match(r"\d+", piece)
        parts.append(int(digits.group()) if digits else 0)
    return parts


def compare_versions(left: str, right: str) -> int:
    """Compare two dotted version strings numerically.

    Missing components count as zero, so "2025.1" equals "2025.1.0".

    Returns:
        Negative if left < right, zero if equal, positive if left > right

    Examples:
        >>> compare_versions("25.2.1", "25.10.0")
        -1
        >>> compare_versions("1.0", "1.0.0")
        0
    """
    left_parts = _version_parts(left)
    right_parts = _version_parts(right)
    length = max(len(left_parts), len(right_parts))
    left_parts += [0] * (length - len(left_parts))
    right_parts += [0] * (length - len(right_parts))
    if left_parts < right_parts:
        return -1
    if left_parts > right_parts:
        return 1
    return 0


# =============================================================================
# Timestamp parsing utilities
# =============================================================================


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO format timestamp from the SpeleoDB API.

    Args:
        timestamp_str: ISO timestamp, e.g. "2025-01-15T10:30:00.000000Z"

    Returns:
        Timezone aware datetime when the string carries an offset, naive
        otherwise, or None if parsing fails
    """
    if not timestamp_str:
        return None

    value = timestamp_str.strip()
    # The 'Z' suffix indicates UTC time
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"

    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def parse_iso_date(date_str: Optional[str]) -> Optional[date]:
    """Parse a date-only string such as "2025-06-23"."""
    if not date_str:
        return None
    try:
        return date.fromisoformat(date_str.strip())
    except ValueError:
        return None


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
