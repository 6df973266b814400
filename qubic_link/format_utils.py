"""Encoding and display utilities.

This module provides the shared helpers the pipelines build on: hex/bytes
conversion, content digests, and the formatting used by display views.
"""

import hashlib
import time
from datetime import datetime

PLACEHOLDER = "—"
ELLIPSIS = "…"


def bytes_to_hex(data: bytes) -> str:
    """Encode bytes as lowercase hex without a prefix."""
    return data.hex()


def hex_to_bytes(value: str) -> bytes:
    """Decode a hex string, accepting an optional 0x prefix.

    Args:
        value: The hex string

    Returns:
        The decoded bytes

    Raises:
        ValueError: If the length is odd or the string is not hex

    """
    cleaned = value.removeprefix("0x")
    if len(cleaned) % 2 != 0:
        raise ValueError("Private key hex length must be even.")
    return bytes.fromhex(cleaned)


def digest_hex(data: str | bytes) -> str:
    """Return the SHA-256 digest of text or bytes as hex.

    Text is UTF-8 encoded before hashing.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def shorten(value: str | None, size: int = 4) -> str:
    """Shorten an identifier to its head and tail.

    Args:
        value: The identifier (may be None)
        size: Number of characters kept at each end

    Returns:
        The shortened value (e.g., "ABCD…WXYZ"), or "" for empty input

    """
    if not value:
        return ""
    if len(value) <= size * 2 + 2:
        return value
    return f"{value[:size]}{ELLIPSIS}{value[-size:]}"


def format_bytes(size: int) -> str:
    """Format a byte count for display (e.g., "0 B", "512 B", "1.5 KB")."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    index = 0
    while index < len(units) - 1 and size >= 1024 ** (index + 1):
        index += 1
    value = size / 1024**index
    if index == 0:
        return f"{value:.0f} {units[index]}"
    return f"{value:.1f} {units[index]}"


def now_ms() -> int:
    """Return the current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def format_expiry_relative(timestamp_ms: int | None, now: int | None = None) -> str:
    """Describe how far away an expiry timestamp is.

    Args:
        timestamp_ms: Expiry in milliseconds since the epoch
        now: Reference time in milliseconds (defaults to the current time)

    Returns:
        "in 5m", "in 3h", "in 2d", "expired", or a placeholder when unknown

    """
    if not timestamp_ms:
        return PLACEHOLDER
    if now is None:
        now = now_ms()
    diff = timestamp_ms - now
    if diff <= 0:
        return "expired"
    minutes = diff // 60_000
    if minutes < 60:
        return f"in {minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"in {hours}h"
    return f"in {hours // 24}d"


def format_absolute_date(timestamp_ms: int | None) -> str:
    """Format a millisecond timestamp as a local date-time string."""
    if not timestamp_ms:
        return PLACEHOLDER
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")
