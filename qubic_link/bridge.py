"""Browser-extension bridge pipeline.

Links Qubic accounts through a wallet extension snap: install the snap at
the configured id and version, resolve the id it was installed under, then
ask it for accounts.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import msgspec

from .format_utils import shorten
from .metrics import CREDENTIAL_IMPORTS_TOTAL
from .models import ChangeNotifier, ConnectionState, QubicAccount

logger = logging.getLogger(__name__)

DEFAULT_SNAP_ID = "npm:@ardata-tech/qubic-wallet"
DEFAULT_SNAP_VERSION = "1.0.7"

SNAP_UNAVAILABLE_MARKERS = ("was not found in the NPM registry", "Failed to fetch snap")
TOLERATED_ERROR_CODES = frozenset({-32601, -32603})

UNAVAILABLE_MESSAGE = "MetaMask Flask with Snaps support is required."
UNAVAILABLE_WARNING = (
    "MetaMask Flask with Snaps support is required. Install MetaMask Flask and enable "
    "Snaps beta to continue."
)


class ProviderRequestError(Exception):
    """JSON-RPC error returned by an extension provider."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class BridgeProvider(Protocol):
    """Extension provider accepting JSON-RPC style requests."""

    def is_available(self) -> bool: ...

    async def request(self, method: str, params: Any = None) -> Any: ...


def is_snap_unavailable(error: Exception) -> bool:
    message = str(error)
    return any(marker in message for marker in SNAP_UNAVAILABLE_MARKERS)


def resolve_installed_snap_id(snaps: Any, target_id: str) -> str:
    """Find the id a snap was installed under.

    An exact match wins; otherwise a `local:` snap whose id ends with the
    package name is accepted. Falls back to the target id.
    """
    if not isinstance(snaps, dict):
        return target_id

    ids = [snap.get("id") for snap in snaps.values() if isinstance(snap, dict)]
    ids = [snap_id for snap_id in ids if isinstance(snap_id, str)]
    if target_id in ids:
        return target_id

    package = target_id.replace("npm:", "")
    for snap_id in ids:
        if snap_id.startswith("local:") and snap_id.endswith(package):
            return snap_id
    return target_id


class BridgePipeline(ChangeNotifier):
    """Connects accounts through the extension snap.

    Args:
        provider: Extension provider, or None when not configured
        snap_id: Snap id to install
        snap_version: Snap version to request

    """

    def __init__(
        self,
        provider: BridgeProvider | None,
        snap_id: str = DEFAULT_SNAP_ID,
        snap_version: str = DEFAULT_SNAP_VERSION,
    ) -> None:
        super().__init__()
        self._provider = provider
        self._snap_id = snap_id
        self._snap_version = snap_version
        self._state = ConnectionState.IDLE
        self._message: str | None = None
        self._accounts: list[QubicAccount] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def message(self) -> str | None:
        return self._message

    @property
    def accounts(self) -> list[QubicAccount]:
        return list(self._accounts)

    @property
    def available(self) -> bool:
        if self._provider is None:
            return False
        try:
            return bool(self._provider.is_available())
        except Exception:
            logger.exception("Bridge availability probe failed")
            return False

    @property
    def warning(self) -> str | None:
        return None if self.available else UNAVAILABLE_WARNING

    def _set(self, state: ConnectionState, message: str | None) -> None:
        self._state = state
        self._message = message
        self._notify()

    async def _install_snap(self, provider: BridgeProvider, snap_id: str) -> str:
        await provider.request(
            "wallet_requestSnaps",
            {snap_id: {"version": self._snap_version}},
        )
        return snap_id

    async def _ensure_snap_installed(self, provider: BridgeProvider) -> str:
        try:
            return await self._install_snap(provider, self._snap_id)
        except Exception as e:
            if not is_snap_unavailable(e) or self._snap_id == DEFAULT_SNAP_ID:
                raise
            logger.warning(
                f"Custom snap id {self._snap_id} failed, falling back to {DEFAULT_SNAP_ID}: {e}",
            )
            self._set(
                self._state,
                "Custom snap id unavailable; installing the official Qubic Snap instead…",
            )
            return await self._install_snap(provider, DEFAULT_SNAP_ID)

    async def _invoke(self, provider: BridgeProvider, snap_id: str, method: str, params: Any) -> Any:
        return await provider.request(
            "wallet_invokeSnap",
            {"snapId": snap_id, "request": {"method": method, "params": params}},
        )

    async def _request_accounts(self, provider: BridgeProvider, snap_id: str) -> list[QubicAccount]:
        accounts: list[QubicAccount] = []
        try:
            response = await self._invoke(provider, snap_id, "qubic_requestAccounts", {})
            if response:
                accounts = msgspec.convert(response, list[QubicAccount])
        except ProviderRequestError as e:
            if e.code not in TOLERATED_ERROR_CODES:
                raise
            logger.debug(f"Snap does not support qubic_requestAccounts (code {e.code})")

        if not accounts:
            public_id = await self._invoke(
                provider,
                snap_id,
                "getPublicId",
                {"accountIdx": 0, "confirm": False},
            )
            if isinstance(public_id, str) and public_id:
                accounts = [QubicAccount(address=public_id, name="Qubic Snap")]

        return accounts

    async def connect(self) -> ConnectionState:
        """Install the snap if needed and load its accounts."""
        self._set(ConnectionState.CONNECTING, "Requesting Qubic Snap access…")

        provider = self._provider
        if provider is None or not self.available:
            self._accounts = []
            self._set(ConnectionState.ERROR, UNAVAILABLE_MESSAGE)
            return self._state

        try:
            target_id = await self._ensure_snap_installed(provider)
            snaps = await provider.request("wallet_getSnaps")
            snap_id = resolve_installed_snap_id(snaps, target_id)
            accounts = await self._request_accounts(provider, snap_id)
            if not accounts:
                raise ProviderRequestError("Qubic Snap is installed but returned no accounts.")
        except Exception as e:
            logger.warning(f"Snap connection failed: {e}")
            CREDENTIAL_IMPORTS_TOTAL.labels(pipeline="bridge", outcome="error").inc()
            self._accounts = []
            self._set(ConnectionState.ERROR, str(e) or "MetaMask Snap request failed.")
            return self._state

        self._accounts = accounts
        CREDENTIAL_IMPORTS_TOTAL.labels(pipeline="bridge", outcome="ready").inc()
        if len(accounts) > 1:
            message = f"Loaded {len(accounts)} accounts via Qubic Snap."
        else:
            message = f"Linked {shorten(accounts[0].address)} via Qubic Snap."
        self._set(ConnectionState.CONNECTED, message)
        return self._state
