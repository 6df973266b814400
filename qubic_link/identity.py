"""Identity derivation and snapshot lookup.

Key derivation itself is delegated to a `KeyDeriver` backend; balances and
owned assets are read from the Qubic RPC API over HTTP. Snapshots are
cached per public identity for the lifetime of the process.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import httpx
import msgspec

from .errors import DerivationError
from .format_utils import hex_to_bytes, shorten
from .metrics import (
    IDENTITY_DERIVATION_DURATION_SECONDS,
    IDENTITY_SNAPSHOT_CACHE_SIZE,
    IDENTITY_SNAPSHOT_REQUESTS_TOTAL,
)
from .models import DerivedIdentity, IdentitySnapshot

if TYPE_CHECKING:
    from .types import PublicId

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://rpc.qubic.org"


class SecretKind(Enum):
    """Kind of secret handed to the identity service."""

    SEED = "seed"
    PRIVATE_KEY = "privateKey"


class KeyDeriver(Protocol):
    """Backend that turns secret material into a Qubic key pair."""

    async def derive_from_seed(self, seed: str) -> DerivedIdentity: ...

    async def derive_from_private_key(self, private_key: bytes) -> DerivedIdentity: ...


class IdentityService(Protocol):
    """Identity derivation and balance lookup service."""

    async def derive_from_seed(self, seed: str) -> DerivedIdentity: ...

    async def derive_from_private_key(self, private_key_hex: str) -> DerivedIdentity: ...

    async def get_balance(self, public_id: str) -> str | None: ...

    async def get_owned_assets(self, public_id: str) -> int | None: ...


# RPC response structs


class _BalanceEntry(msgspec.Struct, rename="camel"):
    id: str | None = None
    balance: str | None = None


class _BalanceResponse(msgspec.Struct):
    balance: _BalanceEntry | None = None


class _OwnedAssetsResponse(msgspec.Struct, rename="camel"):
    owned_assets: list[dict[str, object]] | None = None


_balance_decoder = msgspec.json.Decoder(_BalanceResponse)
_owned_assets_decoder = msgspec.json.Decoder(_OwnedAssetsResponse)


class RpcIdentityService:
    """Identity service backed by the Qubic RPC HTTP API.

    Args:
        rpc_url: Base URL of the RPC endpoint
        deriver: Key derivation backend, or None when derivation is unavailable
        client: Optional preconfigured httpx client (mainly for tests)

    """

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        deriver: KeyDeriver | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._deriver = deriver
        self._client = client or httpx.AsyncClient(
            base_url=rpc_url.rstrip("/"),
            timeout=timeout,
        )

    def _require_deriver(self) -> KeyDeriver:
        if self._deriver is None:
            raise DerivationError(
                "No key derivation backend configured. Set --key-deriver to enable "
                "seed and private key import.",
            )
        return self._deriver

    async def derive_from_seed(self, seed: str) -> DerivedIdentity:
        return await self._require_deriver().derive_from_seed(seed)

    async def derive_from_private_key(self, private_key_hex: str) -> DerivedIdentity:
        try:
            private_key = hex_to_bytes(private_key_hex)
        except ValueError as e:
            raise DerivationError(str(e)) from e
        return await self._require_deriver().derive_from_private_key(private_key)

    async def get_balance(self, public_id: str) -> str | None:
        """GET /v1/balances/{id} and return the balance string."""
        response = await self._client.get(f"/v1/balances/{public_id}")
        response.raise_for_status()
        decoded = _balance_decoder.decode(response.content)
        return decoded.balance.balance if decoded.balance else None

    async def get_owned_assets(self, public_id: str) -> int | None:
        """GET /v1/assets/{id}/owned and return the number of owned assets."""
        response = await self._client.get(f"/v1/assets/{public_id}/owned")
        response.raise_for_status()
        decoded = _owned_assets_decoder.decode(response.content)
        if decoded.owned_assets is None:
            return None
        return len(decoded.owned_assets)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


class IdentityResolver:
    """Derives identities and caches identity snapshots.

    The snapshot cache is keyed by public identity and never invalidated;
    concurrent lookups for the same identity may both miss and both
    populate it, and the last write wins.
    """

    def __init__(self, service: IdentityService) -> None:
        self._service = service
        self._snapshots: dict[str, IdentitySnapshot] = {}

    @property
    def service(self) -> IdentityService:
        return self._service

    async def derive_identity(self, secret: str, kind: SecretKind) -> DerivedIdentity:
        """Derive an identity from a seed or a raw private key.

        Args:
            secret: The normalized seed or private key hex
            kind: Which derivation to request

        Returns:
            The derived identity

        Raises:
            DerivationError: If the service rejects the material or is unavailable

        """
        start_time = time.perf_counter()
        try:
            if kind is SecretKind.SEED:
                identity = await self._service.derive_from_seed(secret)
            else:
                identity = await self._service.derive_from_private_key(secret)
        except DerivationError:
            raise
        except Exception as e:
            raise DerivationError(f"Unable to derive identity: {e}") from e
        finally:
            IDENTITY_DERIVATION_DURATION_SECONDS.labels(kind=kind.value).observe(
                time.perf_counter() - start_time,
            )

        if not identity.public_id:
            raise DerivationError("Identity service returned an empty public identity.")

        logger.debug(f"Derived identity {shorten(identity.public_id)} from {kind.value}")
        return identity

    async def fetch_snapshot(self, public_id: PublicId | str) -> IdentitySnapshot:
        """Return the cached snapshot, querying balance and assets on a miss.

        Lookup failures are treated as unknown values; this never raises.
        """
        cached = self._snapshots.get(public_id)
        if cached is not None:
            IDENTITY_SNAPSHOT_REQUESTS_TOTAL.labels(result="hit").inc()
            return cached

        IDENTITY_SNAPSHOT_REQUESTS_TOTAL.labels(result="miss").inc()
        balance, owned_assets = await asyncio.gather(
            self._service.get_balance(public_id),
            self._service.get_owned_assets(public_id),
            return_exceptions=True,
        )

        if isinstance(balance, BaseException):
            logger.debug(f"Balance lookup failed for {shorten(public_id)}: {balance!r}")
            balance = None
        if isinstance(owned_assets, BaseException):
            logger.debug(f"Asset lookup failed for {shorten(public_id)}: {owned_assets!r}")
            owned_assets = None

        snapshot = IdentitySnapshot(balance=balance, owned_asset_count=owned_assets)
        self._snapshots[public_id] = snapshot
        IDENTITY_SNAPSHOT_CACHE_SIZE.set(len(self._snapshots))
        return snapshot

    def cached_snapshot(self, public_id: str) -> IdentitySnapshot | None:
        return self._snapshots.get(public_id)
