"""Seed pipeline: import of a pasted seed, mnemonic or private key."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .classifier import Invalid, QubicSeed, RawPrivateKey, classify
from .errors import QubicLinkError
from .format_utils import digest_hex, shorten
from .identity import SecretKind
from .metrics import CREDENTIAL_IMPORTS_TOTAL
from .models import ChangeNotifier, ConnectionState

if TYPE_CHECKING:
    from .identity import IdentityResolver

logger = logging.getLogger(__name__)

FINGERPRINT_LENGTH = 24
REDACTED = "•" * 16


class SeedPhase(Enum):
    """Seed pipeline phase."""

    IDLE = "idle"
    INVALID = "invalid"
    PROCESSING = "processing"
    READY = "ready"


@dataclass(frozen=True, slots=True)
class SeedIdentityDetails:
    """Identity derived from a Qubic seed or raw private key."""

    public_id: str
    public_key_hex: str
    private_key_hex: str
    balance: str | None = None
    owned_asset_count: int | None = None

    def __repr__(self) -> str:
        return f"SeedIdentityDetails(public_id={shorten(self.public_id)!r})"


@dataclass(frozen=True, slots=True)
class SeedState:
    phase: SeedPhase = SeedPhase.IDLE
    message: str | None = None
    fingerprint: str | None = None
    descriptor: str | None = None
    identity: SeedIdentityDetails | None = None


class SeedImporter(ChangeNotifier):
    """Classifies pasted secret material and derives an identity where possible.

    Only Qubic seeds and raw private keys yield a real public identity. A
    generic mnemonic or hex key is accepted with a content fingerprint only.
    A newer submission supersedes any submission still in flight.
    """

    def __init__(self, resolver: IdentityResolver) -> None:
        super().__init__()
        self._resolver = resolver
        self._state = SeedState()
        self._visible = False
        self._generation = 0

    @property
    def state(self) -> SeedState:
        return self._state

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def connection_state(self) -> ConnectionState:
        match self._state.phase:
            case SeedPhase.READY:
                return ConnectionState.CONNECTED
            case SeedPhase.PROCESSING:
                return ConnectionState.CONNECTING
            case SeedPhase.INVALID:
                return ConnectionState.ERROR
            case _:
                return ConnectionState.IDLE

    def _set_state(self, state: SeedState) -> None:
        self._state = state
        self._notify()

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _invalid(self, message: str) -> None:
        CREDENTIAL_IMPORTS_TOTAL.labels(pipeline="seed", outcome="invalid").inc()
        self._set_state(SeedState(phase=SeedPhase.INVALID, message=message))

    async def submit(self, value: str) -> SeedState:
        """Submit pasted material.

        Args:
            value: Raw user input

        Returns:
            The resulting pipeline state

        """
        self._generation += 1
        generation = self._generation

        normalized = value.strip()
        if not normalized:
            self._invalid("Seed cannot be empty.")
            return self._state

        classification = classify(normalized)
        if isinstance(classification, QubicSeed | RawPrivateKey):
            return await self._derive(classification, generation)

        if isinstance(classification, Invalid):
            self._invalid("Enter 12-24 words or a 64-character private key.")
            return self._state

        self._set_state(SeedState(phase=SeedPhase.PROCESSING, message="Deriving fingerprint…"))
        fingerprint = await asyncio.to_thread(digest_hex, normalized)
        if not self._is_current(generation):
            return self._state

        CREDENTIAL_IMPORTS_TOTAL.labels(pipeline="seed", outcome="ready").inc()
        self._set_state(
            SeedState(
                phase=SeedPhase.READY,
                message="Seed imported securely.",
                fingerprint=fingerprint[:FINGERPRINT_LENGTH],
                descriptor=classification.descriptor,
            ),
        )
        return self._state

    async def _derive(self, classification: QubicSeed | RawPrivateKey, generation: int) -> SeedState:
        self._set_state(SeedState(phase=SeedPhase.PROCESSING, message="Deriving Qubic identity…"))

        try:
            if isinstance(classification, QubicSeed):
                identity = await self._resolver.derive_identity(classification.seed, SecretKind.SEED)
            else:
                identity = await self._resolver.derive_identity(
                    classification.private_key_hex,
                    SecretKind.PRIVATE_KEY,
                )
            snapshot = await self._resolver.fetch_snapshot(identity.public_id)
        except QubicLinkError as e:
            if self._is_current(generation):
                self._invalid(str(e))
            return self._state

        if not self._is_current(generation):
            return self._state

        logger.info(f"Seed import derived identity {shorten(identity.public_id)}")
        CREDENTIAL_IMPORTS_TOTAL.labels(pipeline="seed", outcome="ready").inc()
        self._set_state(
            SeedState(
                phase=SeedPhase.READY,
                message="Qubic identity derived successfully.",
                fingerprint=identity.public_id[-FINGERPRINT_LENGTH:],
                descriptor=classification.descriptor,
                identity=SeedIdentityDetails(
                    public_id=identity.public_id,
                    public_key_hex=identity.public_key_hex,
                    private_key_hex=identity.private_key_hex,
                    balance=snapshot.balance,
                    owned_asset_count=snapshot.owned_asset_count,
                ),
            ),
        )
        return self._state

    def set_visible(self, visible: bool | None = None) -> bool:
        """Set or toggle whether the derived private key is revealed."""
        self._visible = (not self._visible) if visible is None else visible
        self._notify()
        return self._visible

    def displayed_private_key(self) -> str | None:
        """Return the private key for display, redacted unless revealed."""
        identity = self._state.identity
        if identity is None:
            return None
        return identity.private_key_hex if self._visible else REDACTED

    def reset(self) -> None:
        """Drop any derived material and return to idle."""
        self._generation += 1
        self._visible = False
        self._set_state(SeedState())
