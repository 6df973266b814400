"""Type definitions for qubic-link.

This module contains NewType definitions for domain-specific strings to
improve type safety and code readability.
"""

from typing import NewType

PublicId = NewType("PublicId", str)
"""Qubic public identity (60 uppercase letters)."""

Topic = NewType("Topic", str)
"""Pairing session topic, or the native sentinel topic."""

ChecksumHex = NewType("ChecksumHex", str)
"""Truncated SHA-256 digest of normalized vault text (32 hex characters)."""
