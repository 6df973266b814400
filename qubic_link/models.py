"""Data classes for qubic-link.

This module contains the structured types shared by the credential
pipelines. Types that cross the HTTP boundary are msgspec Structs; types
that hold secret material are slotted dataclasses that keep secrets out of
their repr.
"""

import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum

import msgspec

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Display state shared by every pipeline."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Transport(Enum):
    """How the active session reaches the wallet."""

    NATIVE = "native"
    REMOTE = "remote"


class AccountSource(Enum):
    """Provenance of a vault account."""

    SEED = "seed"
    PRIVATE_KEY = "privateKey"
    PUBLIC_KEY = "publicKey"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class DerivedIdentity:
    """Key pair and public identity returned by the identity service.

    Attributes:
        public_id: The 60-letter public identity
        public_key_hex: The public key in hex
        private_key_hex: The private key in hex (never shown in repr)

    """

    public_id: str
    public_key_hex: str
    private_key_hex: str = field(repr=False)


class IdentitySnapshot(msgspec.Struct, frozen=True):
    """Point-in-time balance lookup for a public identity."""

    balance: str | None = None
    owned_asset_count: int | None = None


@dataclass(slots=True)
class VaultUpload:
    """A staged vault file awaiting its password.

    Attributes:
        file_bytes: Normalized (post-extraction) file content
        file_name: Name of the uploaded file
        size_bytes: Size of the original upload
        checksum: First 32 hex characters of the normalized content digest

    """

    file_bytes: bytes = field(repr=False)
    file_name: str
    size_bytes: int
    checksum: str


class VaultAccount(msgspec.Struct, frozen=True):
    """One recoverable entry of a vault."""

    public_id: str
    source: AccountSource
    display_name: str | None = None
    balance: str | None = None


class VaultSummary(msgspec.Struct, frozen=True):
    """Summary metadata of an imported vault."""

    accounts: int | None = None
    last_updated: str | None = None


class QubicAsset(msgspec.Struct, frozen=True, rename="camel"):
    """Asset holding reported by the wallet."""

    asset_name: str
    issuer_identity: str
    owned_amount: int


class QubicAccount(msgspec.Struct, frozen=True, rename="camel"):
    """Account reported by a linked wallet."""

    address: str
    name: str | None = None
    amount: int | float | None = None
    assets: list[QubicAsset] | None = None


class QubicSession(msgspec.Struct):
    """The single linked wallet session.

    Mutated in place by session events; `topic` is the native sentinel for
    the single-device transport.
    """

    topic: str
    address: str
    chain_id: str
    transport: Transport
    expiry: int | None = None
    wallet_name: str | None = None
    wallet_url: str | None = None
    accounts: list[QubicAccount] | None = None


class StatusDescriptor(msgspec.Struct, frozen=True):
    """Display status of one pipeline."""

    label: str
    state: ConnectionState
    description: str | None = None


class ChangeNotifier:
    """Mixin that lets a pipeline announce state changes to listeners."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[], None]] = []

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        with suppress(ValueError):
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("State change listener failed")
