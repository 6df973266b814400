"""Base types, structs and validation helpers for handlers."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar

import msgspec
from litestar.exceptions import ValidationException

from qubic_link.format_utils import shorten
from qubic_link.models import (
    ConnectionState,
    QubicAccount,
    StatusDescriptor,
    Transport,
    VaultAccount,
    VaultSummary,
)
from qubic_link.vault import VaultPhase

if TYPE_CHECKING:
    from qubic_link.bridge import BridgePipeline
    from qubic_link.seed import SeedImporter
    from qubic_link.session import SessionMachine
    from qubic_link.vault import VaultImporter

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Request structs


class SeedSubmitRequest(msgspec.Struct):
    """Request struct for submitting seed material."""

    seed: str


class SeedVisibilityRequest(msgspec.Struct):
    """Request struct for revealing or hiding the derived private key.

    Omitting `visible` toggles the current setting.
    """

    visible: bool | None = None


class VaultUnlockRequest(msgspec.Struct):
    """Request struct for unlocking a staged encrypted vault."""

    password: str


# Response structs


class HealthResponse(msgspec.Struct):
    """Health check response."""

    status: str
    session_state: ConnectionState


class StatusResponse(msgspec.Struct):
    """Ordered status descriptors of the four pipelines."""

    data: list[StatusDescriptor]


class AccountView(msgspec.Struct):
    address: str
    short_address: str
    name: str | None = None
    amount: int | float | None = None
    asset_count: int = 0


class SessionView(msgspec.Struct):
    """Display-ready view of the wallet session pipeline."""

    state: ConnectionState
    message: str | None
    button_label: str
    warning: str | None
    has_native: bool
    ready: bool
    transport: Transport | None = None
    topic: str | None = None
    address: str | None = None
    short_address: str | None = None
    chain_id: str | None = None
    wallet_name: str | None = None
    wallet_url: str | None = None
    pairing_uri: str | None = None
    deep_link: str | None = None
    expiry_relative: str | None = None
    expiry_absolute: str | None = None
    accounts: list[AccountView] = msgspec.field(default_factory=list)
    additional_accounts: int = 0


class BridgeView(msgspec.Struct):
    """Display-ready view of the extension bridge pipeline."""

    state: ConnectionState
    message: str | None
    available: bool
    warning: str | None
    accounts: list[AccountView] = msgspec.field(default_factory=list)


class SeedIdentityView(msgspec.Struct):
    public_id: str
    short_public_id: str
    public_key_hex: str
    private_key_hex: str | None
    balance: str | None = None
    owned_asset_count: int | None = None


class SeedView(msgspec.Struct):
    """Display-ready view of the seed pipeline."""

    state: str
    connection_state: ConnectionState
    message: str | None
    visible: bool
    fingerprint: str | None = None
    descriptor: str | None = None
    identity: SeedIdentityView | None = None


class VaultAccountView(msgspec.Struct):
    public_id: str
    short_public_id: str
    source: str
    display_name: str | None = None
    balance: str | None = None


class VaultView(msgspec.Struct):
    """Display-ready view of the vault pipeline."""

    state: str
    connection_state: ConnectionState
    message: str | None
    awaiting_password: bool
    file_name: str | None = None
    size_bytes: int | None = None
    size: str | None = None
    checksum: str | None = None
    summary: VaultSummary | None = None
    accounts: list[VaultAccountView] = msgspec.field(default_factory=list)


# View builders


def account_view(account: QubicAccount) -> AccountView:
    return AccountView(
        address=account.address,
        short_address=shorten(account.address),
        name=account.name,
        amount=account.amount,
        asset_count=len(account.assets or []),
    )


def build_session_view(machine: SessionMachine) -> SessionView:
    """Build the session view from the state machine's projections."""
    view = SessionView(
        state=machine.state,
        message=machine.message,
        button_label=machine.button_label,
        warning=machine.warning,
        has_native=machine.has_native,
        ready=machine.ready,
        pairing_uri=machine.pairing_uri,
        deep_link=machine.deep_link,
    )
    session = machine.session
    if session is None:
        return view

    view.transport = session.transport
    view.topic = session.topic
    view.address = session.address
    view.short_address = shorten(session.address)
    view.chain_id = session.chain_id
    view.wallet_name = session.wallet_name
    view.wallet_url = session.wallet_url
    view.expiry_relative = machine.expiry_relative
    view.expiry_absolute = machine.expiry_absolute
    view.accounts = [account_view(account) for account in machine.visible_accounts]
    view.additional_accounts = machine.additional_accounts
    return view


def build_bridge_view(bridge: BridgePipeline) -> BridgeView:
    return BridgeView(
        state=bridge.state,
        message=bridge.message,
        available=bridge.available,
        warning=bridge.warning,
        accounts=[account_view(account) for account in bridge.accounts],
    )


def build_seed_view(importer: SeedImporter) -> SeedView:
    """Build the seed view. The private key is redacted unless revealed."""
    state = importer.state
    identity = None
    if state.identity is not None:
        identity = SeedIdentityView(
            public_id=state.identity.public_id,
            short_public_id=shorten(state.identity.public_id),
            public_key_hex=state.identity.public_key_hex,
            private_key_hex=importer.displayed_private_key(),
            balance=state.identity.balance,
            owned_asset_count=state.identity.owned_asset_count,
        )
    return SeedView(
        state=state.phase.value,
        connection_state=importer.connection_state,
        message=state.message,
        visible=importer.visible,
        fingerprint=state.fingerprint,
        descriptor=state.descriptor,
        identity=identity,
    )


def vault_account_view(account: VaultAccount) -> VaultAccountView:
    return VaultAccountView(
        public_id=account.public_id,
        short_public_id=shorten(account.public_id),
        source=account.source.value,
        display_name=account.display_name,
        balance=account.balance,
    )


def build_vault_view(importer: VaultImporter) -> VaultView:
    state = importer.state
    return VaultView(
        state=state.phase.value,
        connection_state=importer.connection_state,
        message=state.message,
        awaiting_password=state.phase is VaultPhase.AWAITING_PASSWORD,
        file_name=state.file_name,
        size_bytes=state.size_bytes,
        size=state.formatted_size,
        checksum=state.checksum,
        summary=state.summary,
        accounts=[vault_account_view(account) for account in state.accounts],
    )


# Validation helpers


def validate_request(data: Any, request_type: type[T]) -> T:
    """Validate and parse a JSON request body into a request struct.

    Args:
        data: Raw request data
        request_type: Struct type to convert into

    Returns:
        Parsed request struct

    Raises:
        ValidationException: If validation fails

    """
    try:
        return msgspec.convert(data, request_type)
    except (msgspec.ValidationError, msgspec.DecodeError) as e:
        raise ValidationException(detail=f"Validation error: {e}") from e
    except ValueError as e:
        raise ValidationException(detail=str(e)) from e
