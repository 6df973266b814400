"""Credential classification.

Decides what kind of secret a string represents from its shape alone. The
Qubic seed and raw private key patterns are checked before the generic
mnemonic/hex check because only they lead to a real identity derivation.
"""

import re
from dataclasses import dataclass

QUBIC_SEED_PATTERN = re.compile(r"^[a-z]{55,}$")
HEX_PRIVATE_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")
QUBIC_IDENTITY_PATTERN = re.compile(r"^[A-Z]{60}$")

MIN_MNEMONIC_WORDS = 12
MAX_MNEMONIC_WORDS = 24


@dataclass(frozen=True, slots=True)
class Invalid:
    """Input matched no known secret shape."""

    descriptor: str = "unrecognized"


@dataclass(frozen=True, slots=True)
class QubicSeed:
    """A network-native deterministic seed."""

    seed: str
    descriptor: str = "Qubic deterministic seed"


@dataclass(frozen=True, slots=True)
class RawPrivateKey:
    """A 64-hex-character private key from which an identity is derivable."""

    private_key_hex: str
    descriptor: str = "Raw Schnorr private key"


@dataclass(frozen=True, slots=True)
class ValidMnemonic:
    """A generic word mnemonic. No network identity is derivable from it."""

    word_count: int

    @property
    def descriptor(self) -> str:
        return f"{self.word_count}-word mnemonic"


@dataclass(frozen=True, slots=True)
class ValidHexKey:
    """A generic hex key found after collapsing whitespace."""

    descriptor: str = "64-character private key"


Classification = Invalid | QubicSeed | RawPrivateKey | ValidMnemonic | ValidHexKey


def _strip_hex_prefix(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


def normalize_seed(value: str) -> str:
    """Normalize a seed candidate (trim and lowercase)."""
    return value.strip().lower()


def normalize_private_key(value: str) -> str:
    """Normalize a private key candidate (trim and drop any 0x prefix)."""
    return _strip_hex_prefix(value.strip())


def is_qubic_seed(value: str) -> bool:
    """Check whether a normalized value is a Qubic seed."""
    return QUBIC_SEED_PATTERN.match(value) is not None


def is_hex_private_key(value: str) -> bool:
    """Check whether a value is a 64-hex-character key, with or without 0x."""
    return HEX_PRIVATE_KEY_PATTERN.match(_strip_hex_prefix(value)) is not None


def is_qubic_identity(value: str) -> bool:
    """Check whether a value is a 60-letter public identity."""
    return QUBIC_IDENTITY_PATTERN.match(value) is not None


def classify_generic(value: str) -> ValidMnemonic | ValidHexKey | Invalid:
    """Classify input that is neither a Qubic seed nor a raw private key.

    Args:
        value: The trimmed input

    Returns:
        ValidMnemonic for 12-24 words, ValidHexKey for 64 hex characters
        once whitespace is removed, Invalid otherwise

    """
    words = value.split()
    if MIN_MNEMONIC_WORDS <= len(words) <= MAX_MNEMONIC_WORDS:
        return ValidMnemonic(word_count=len(words))

    compact = "".join(words)
    if HEX_PRIVATE_KEY_PATTERN.match(compact):
        return ValidHexKey()

    return Invalid()


def classify(value: str) -> Classification:
    """Classify a pasted secret.

    Precedence: Qubic seed (55+ lowercase letters), then raw private key
    (64 hex characters, optional 0x), then the generic mnemonic/hex check.

    Args:
        value: Raw user input

    Returns:
        The classification variant

    """
    normalized = value.strip()
    if not normalized:
        return Invalid()

    seed_candidate = normalize_seed(normalized)
    if is_qubic_seed(seed_candidate):
        return QubicSeed(seed=seed_candidate)

    if is_hex_private_key(normalized):
        return RawPrivateKey(private_key_hex=normalize_private_key(normalized))

    return classify_generic(normalized)
