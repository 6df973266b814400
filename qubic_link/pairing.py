"""Remote pairing protocol boundary.

The protocol client itself is an external collaborator; this module fixes
the surface the session machine relies on, the namespace and metadata the
application requests, and a per-project client cache.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import msgspec

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

QUBIC_NAMESPACE = "qubic"
QUBIC_CHAIN_ID = "qubic:mainnet"

QUBIC_METHODS = (
    "qubic_requestAccounts",
    "qubic_sendQubic",
    "qubic_signTransaction",
    "qubic_sendTransaction",
    "qubic_sign",
    "qubic_sendAsset",
)

QUBIC_EVENTS = (
    "accountsChanged",
    "amountChanged",
    "assetAmountChanged",
)

QUBIC_OPTIONAL_NAMESPACES: dict[str, dict[str, list[str]]] = {
    QUBIC_NAMESPACE: {
        "chains": [QUBIC_CHAIN_ID],
        "methods": list(QUBIC_METHODS),
        "events": list(QUBIC_EVENTS),
    },
}

USER_DISCONNECTED = {"code": 6000, "message": "User disconnected"}

DEEP_LINK_PREFIX = "qubic-wallet://pairwc/"

SESSION_DELETE = "session_delete"
SESSION_EVENT = "session_event"
SESSION_UPDATE = "session_update"


class PeerMetadata(msgspec.Struct, frozen=True):
    """Metadata advertised by one side of a pairing."""

    name: str | None = None
    description: str | None = None
    url: str | None = None
    icons: list[str] = msgspec.field(default_factory=list)


class PairingNamespace(msgspec.Struct, frozen=True):
    accounts: list[str] = msgspec.field(default_factory=list)
    methods: list[str] = msgspec.field(default_factory=list)
    events: list[str] = msgspec.field(default_factory=list)


class PairingSession(msgspec.Struct, frozen=True):
    """Session record returned by the protocol client on approval.

    `expiry` is in seconds since the epoch.
    """

    topic: str
    namespaces: dict[str, PairingNamespace] = msgspec.field(default_factory=dict)
    expiry: int | None = None
    peer: PeerMetadata = msgspec.field(default_factory=PeerMetadata)

    @property
    def qubic_namespace(self) -> PairingNamespace | None:
        return self.namespaces.get(QUBIC_NAMESPACE)


class AccountString(msgspec.Struct, frozen=True):
    """Parsed `namespace:chain:address` account string."""

    chain_id: str
    address: str


class ConnectResult(msgspec.Struct, frozen=True):
    """Outcome of initiating a pairing.

    Attributes:
        uri: Pairing URI to display, if the client produced one
        approval: Awaitable factory that resolves once the wallet approves

    """

    uri: str | None
    approval: Callable[[], Awaitable[PairingSession]]


class SessionStore(Protocol):
    def get_all(self) -> list[PairingSession]: ...

    def get(self, topic: str) -> PairingSession | None: ...


class PairingClient(Protocol):
    """Remote pairing protocol client."""

    @property
    def session(self) -> SessionStore: ...

    async def connect(self, optional_namespaces: dict[str, Any]) -> ConnectResult: ...

    async def request(self, topic: str, chain_id: str, method: str, params: Any) -> Any: ...

    async def disconnect(self, topic: str, reason: dict[str, Any]) -> None: ...

    def on(self, event: str, handler: Callable[[dict[str, Any]], None]) -> None: ...

    def off(self, event: str, handler: Callable[[dict[str, Any]], None]) -> None: ...


PairingClientFactory = Callable[[str, PeerMetadata], Awaitable[PairingClient]]


def build_metadata(app_url: str) -> PeerMetadata:
    """Build the metadata this application advertises to wallets."""
    return PeerMetadata(
        name="QubicWC",
        description="wallet connect for qubic",
        url=app_url,
        icons=[
            "https://wallet.qubic.org/assets/qubic-icon.png",
            "https://wallet.qubic.org/assets/qubic-gradient.png",
        ],
    )


def build_deep_link(uri: str) -> str:
    """Build the wallet deep link for a pairing URI."""
    return f"{DEEP_LINK_PREFIX}{uri}"


def parse_account_string(value: str | None) -> AccountString | None:
    """Parse a `namespace:chain:address` account string.

    Returns:
        The chain id (`namespace:chain`) and address, or None if malformed

    """
    if not value:
        return None
    parts = value.split(":")
    if len(parts) < 3 or not all(parts[:3]):
        return None
    namespace, reference, address = parts[0], parts[1], ":".join(parts[2:])
    return AccountString(chain_id=f"{namespace}:{reference}", address=address)


class PairingClientCache:
    """Caches one initialized protocol client per project id.

    Concurrent callers for the same project id share a single init.
    """

    def __init__(self, factory: PairingClientFactory | None, metadata: PeerMetadata) -> None:
        self._factory = factory
        self._metadata = metadata
        self._clients: dict[str, asyncio.Task[PairingClient]] = {}

    async def get(self, project_id: str | None) -> PairingClient:
        """Return the client for a project id, initializing it on first use.

        Raises:
            ConfigurationError: If no project id or no client factory is configured

        """
        if not project_id:
            raise ConfigurationError(
                "Pairing project ID missing. Set QUBIC_LINK_PAIRING_PROJECT_ID.",
            )
        if self._factory is None:
            raise ConfigurationError(
                "No pairing client backend configured. Set --pairing-client-factory to "
                "enable remote pairing.",
            )

        task = self._clients.get(project_id)
        if task is None:
            logger.info(f"Initializing pairing client for project {project_id[:8]}…")
            task = asyncio.ensure_future(self._factory(project_id, self._metadata))
            self._clients[project_id] = task

        try:
            return await asyncio.shield(task)
        except Exception:
            # A failed init is not cached so the next attempt retries.
            if self._clients.get(project_id) is task:
                del self._clients[project_id]
            raise

    def clear(self) -> None:
        for task in self._clients.values():
            task.cancel()
        self._clients.clear()
