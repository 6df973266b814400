"""Session state machine for the linked Qubic wallet.

Two mutually exclusive transports reach the wallet: a native provider on
the same device, or a remote wallet paired over the pairing protocol. At
most one session exists at a time.

States:
    idle -> connecting -> connected -> idle (disconnect, remote delete)
    connecting -> error, connected -> error
    connecting -> connected | idle (cancel pairing)

Protocol callbacks are turned into session messages and fed through
`SessionMachine.dispatch`, which never raises.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import msgspec

from .errors import ConfigurationError, ProtocolError
from .format_utils import format_absolute_date, format_expiry_relative, shorten
from .metrics import SESSION_TRANSITIONS_TOTAL
from .models import ChangeNotifier, ConnectionState, QubicAccount, QubicSession, Transport
from .pairing import (
    QUBIC_CHAIN_ID,
    QUBIC_EVENTS,
    QUBIC_OPTIONAL_NAMESPACES,
    SESSION_DELETE,
    SESSION_EVENT,
    SESSION_UPDATE,
    USER_DISCONNECTED,
    build_deep_link,
    parse_account_string,
)
from .types import Topic

if TYPE_CHECKING:
    from .pairing import PairingClient, PairingClientCache, PairingSession

logger = logging.getLogger(__name__)

NATIVE_TOPIC = Topic("native-session")
QUBIC_WALLET_NAME = "Qubic Wallet"
QUBIC_WALLET_URL = "https://wallet.qubic.org/"
MAX_VISIBLE_ACCOUNTS = 3
DEFAULT_POLL_INTERVAL = 3.0

MISSING_PROJECT_MESSAGE = "Set QUBIC_LINK_PAIRING_PROJECT_ID to enable Qubic wallet pairing."
FALLBACK_PROJECT_WARNING = (
    "Using the demo pairing project ID. For production, create your own at "
    "https://cloud.walletconnect.com, whitelist this domain, and set "
    "QUBIC_LINK_PAIRING_PROJECT_ID. Pairing URIs will generate, but connections may "
    "fail if the domain isn't whitelisted."
)


class NativeProvider(Protocol):
    """Wallet provider reachable on the same device."""

    def is_available(self) -> bool: ...

    async def request(self, method: str, params: Any = None) -> Any: ...


# Session messages


@dataclass(frozen=True, slots=True)
class SessionDeleted:
    """The remote wallet closed the session."""

    topic: str


@dataclass(frozen=True, slots=True)
class SessionEventReceived:
    """The remote wallet pushed an account or amount change."""

    topic: str
    chain_id: str
    name: str
    data: Any = None


@dataclass(frozen=True, slots=True)
class SessionUpdated:
    """The remote wallet changed the session record."""

    topic: str


SessionMessage = SessionDeleted | SessionEventReceived | SessionUpdated


def message_from_payload(event: str, payload: dict[str, Any]) -> SessionMessage | None:
    """Translate a raw protocol callback payload into a session message."""
    topic = payload.get("topic")
    if not isinstance(topic, str):
        return None
    if event == SESSION_DELETE:
        return SessionDeleted(topic=topic)
    if event == SESSION_UPDATE:
        return SessionUpdated(topic=topic)
    if event == SESSION_EVENT:
        params = payload.get("params")
        if not isinstance(params, dict):
            return None
        inner = params.get("event")
        if not isinstance(inner, dict):
            return None
        chain_id = params.get("chainId")
        name = inner.get("name")
        return SessionEventReceived(
            topic=topic,
            chain_id=chain_id if isinstance(chain_id, str) else "",
            name=name if isinstance(name, str) else "",
            data=inner.get("data"),
        )
    return None


def _account_from_native(candidate: Any) -> tuple[str | None, list[QubicAccount] | None]:
    """Extract the address (and account entry, if structured) from a native response."""
    if isinstance(candidate, str):
        return candidate or None, None
    if isinstance(candidate, dict):
        address = candidate.get("address")
        if not isinstance(address, str) or not address:
            return None, None
        amount = candidate.get("amount")
        account = QubicAccount(
            address=address,
            name=candidate.get("name") or "Primary",
            amount=amount if isinstance(amount, int | float) else None,
        )
        return address, [account]
    return None, None


class ProviderWatcher:
    """Polls a provider availability probe at a fixed interval.

    Args:
        probe: Returns whether the provider is present
        on_change: Called with the new availability when it changes
        interval: Seconds between polls

    """

    def __init__(
        self,
        probe: Callable[[], bool],
        on_change: Callable[[bool], None],
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self._probe = probe
        self._on_change = on_change
        self._interval = interval
        self._available: bool | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def available(self) -> bool:
        return bool(self._available)

    def poll(self) -> bool:
        try:
            available = bool(self._probe())
        except Exception:
            logger.exception("Provider availability probe failed")
            available = False
        if available != self._available:
            self._available = available
            self._on_change(available)
        return available

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.poll()

    def start(self) -> None:
        self.poll()
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None


class SessionMachine(ChangeNotifier):
    """Owns the single linked wallet session and the protocol client.

    Args:
        pairing: Per-project protocol client cache
        project_id: Effective pairing project id, or None when unset
        using_fallback_project_id: Whether `project_id` is the shared demo id
        native_provider: Same-device provider, or None when not configured

    """

    def __init__(
        self,
        pairing: PairingClientCache,
        project_id: str | None,
        using_fallback_project_id: bool = False,
        native_provider: NativeProvider | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        super().__init__()
        self._pairing = pairing
        self._project_id = project_id
        self._using_fallback = using_fallback_project_id
        self._native_provider = native_provider

        self._state = ConnectionState.IDLE
        self._message: str | None = None
        self._session: QubicSession | None = None
        self._pairing_uri: str | None = None
        self._client: PairingClient | None = None
        self._has_native = False
        self._attempt = 0
        self._pairing_attempt: int | None = None
        self._handlers: dict[str, Callable[[dict[str, Any]], None]] = {}

        self._watcher: ProviderWatcher | None = None
        if native_provider is not None:
            self._watcher = ProviderWatcher(
                native_provider.is_available,
                self.set_native_available,
                poll_interval,
            )

    # Read-only projections

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def message(self) -> str | None:
        return self._message

    @property
    def session(self) -> QubicSession | None:
        return self._session

    @property
    def pairing_uri(self) -> str | None:
        return self._pairing_uri

    @property
    def deep_link(self) -> str | None:
        return build_deep_link(self._pairing_uri) if self._pairing_uri else None

    @property
    def has_native(self) -> bool:
        return self._has_native

    @property
    def ready(self) -> bool:
        """Return True once a protocol client has been initialized."""
        return self._client is not None

    @property
    def button_label(self) -> str:
        if self._session is not None:
            if self._session.transport is Transport.NATIVE:
                return "Refresh native session"
            return "Refresh remote session"
        if self._has_native:
            return "Connect installed Qubic Wallet"
        return "Pair Qubic Wallet remotely"

    @property
    def warning(self) -> str | None:
        if self._has_native:
            return None
        if not self._project_id:
            return "Set QUBIC_LINK_PAIRING_PROJECT_ID to request remote sessions."
        if self._using_fallback:
            return FALLBACK_PROJECT_WARNING
        if not self.ready:
            return "Preparing pairing client…"
        return None

    @property
    def expiry_relative(self) -> str:
        return format_expiry_relative(self._session.expiry if self._session else None)

    @property
    def expiry_absolute(self) -> str:
        return format_absolute_date(self._session.expiry if self._session else None)

    @property
    def visible_accounts(self) -> list[QubicAccount]:
        if self._session is None or not self._session.accounts:
            return []
        return self._session.accounts[:MAX_VISIBLE_ACCOUNTS]

    @property
    def additional_accounts(self) -> int:
        if self._session is None or not self._session.accounts:
            return 0
        return len(self._session.accounts) - len(self.visible_accounts)

    # Internal transitions

    def _transition(self, state: ConnectionState, message: str | None) -> None:
        if state is not self._state:
            SESSION_TRANSITIONS_TOTAL.labels(state=state.value).inc()
            logger.debug(f"Session {self._state.value} -> {state.value}")
        self._state = state
        self._message = message
        self._notify()

    def _is_remote_topic(self, topic: str) -> bool:
        return (
            self._session is not None
            and self._session.transport is Transport.REMOTE
            and self._session.topic == topic
        )

    def set_native_available(self, available: bool) -> None:
        if available != self._has_native:
            logger.info(f"Native Qubic provider {'detected' if available else 'gone'}")
            self._has_native = available
            self._notify()

    def hydrate(self, record: PairingSession) -> bool:
        """Replace the session from a protocol session record.

        Returns:
            False if the record carries no usable Qubic account

        """
        namespace = record.qubic_namespace
        first_account = namespace.accounts[0] if namespace and namespace.accounts else None
        primary = parse_account_string(first_account)
        if primary is None:
            logger.warning(f"Ignoring session {shorten(record.topic)} without a Qubic account")
            return False

        expiry_ms = record.expiry * 1000 if record.expiry is not None else None
        previous = self._session
        self._session = QubicSession(
            topic=record.topic,
            address=primary.address,
            chain_id=primary.chain_id,
            transport=Transport.REMOTE,
            expiry=expiry_ms,
            wallet_name=record.peer.name,
            wallet_url=record.peer.url,
            accounts=previous.accounts if previous and previous.topic == record.topic else None,
        )
        self._transition(
            ConnectionState.CONNECTED,
            f"Linked {shorten(primary.address)} · {format_expiry_relative(expiry_ms)}",
        )
        return True

    async def fetch_accounts_snapshot(self, client: PairingClient, topic: str) -> None:
        """Ask the wallet for its accounts. Failures are logged only."""
        try:
            response = await client.request(topic, QUBIC_CHAIN_ID, "qubic_requestAccounts", [])
            accounts = msgspec.convert(response, list[QubicAccount])
        except Exception as e:
            logger.warning(f"Failed to query Qubic accounts: {e}")
            return

        session = self._session
        if not accounts or session is None or not self._is_remote_topic(topic):
            return
        session.accounts = accounts
        suffix = "s" if len(accounts) > 1 else ""
        self._transition(
            self._state,
            f"Primary {shorten(accounts[0].address)} · {len(accounts)} account{suffix}",
        )

    # Lifecycle

    async def start(self) -> None:
        """Initialize the protocol client, adopt an existing session, attach listeners."""
        if self._watcher is not None:
            self._watcher.start()

        if not self._project_id:
            self._transition(ConnectionState.ERROR, MISSING_PROJECT_MESSAGE)
            return

        try:
            client = await self._pairing.get(self._project_id)
        except Exception as e:
            logger.warning(f"Unable to initialize pairing client: {e}")
            self._transition(
                ConnectionState.ERROR,
                str(e) or "Unable to initialize Qubic Wallet client.",
            )
            return

        self._client = client
        self._attach(client)
        self._notify()

        existing = [record for record in client.session.get_all() if record.qubic_namespace]
        if existing and self._session is None:
            record = existing[-1]
            logger.info(f"Resuming existing session {shorten(record.topic)}")
            if self.hydrate(record):
                await self.fetch_accounts_snapshot(client, record.topic)

    async def stop(self) -> None:
        """Detach protocol listeners and stop provider polling."""
        self._attempt += 1
        if self._client is not None:
            self._detach(self._client)
        if self._watcher is not None:
            await self._watcher.stop()

    def _attach(self, client: PairingClient) -> None:
        if self._handlers:
            return
        for event in (SESSION_DELETE, SESSION_EVENT, SESSION_UPDATE):

            def handler(payload: Any, event: str = event) -> None:
                try:
                    message = message_from_payload(event, payload) if isinstance(payload, dict) else None
                except Exception:
                    logger.exception(f"Failed to parse {event} payload")
                    return
                if message is None:
                    logger.debug(f"Ignoring malformed {event} payload")
                    return
                self.dispatch(message)

            self._handlers[event] = handler
            client.on(event, handler)

    def _detach(self, client: PairingClient) -> None:
        for event, handler in self._handlers.items():
            try:
                client.off(event, handler)
            except Exception:
                logger.exception(f"Failed to detach {event} listener")
        self._handlers.clear()

    # Message handling

    def dispatch(self, message: SessionMessage) -> None:
        """Apply a protocol message. Messages for other topics are ignored."""
        try:
            self._apply(message)
        except Exception:
            logger.exception(f"Failed to apply session message {type(message).__name__}")

    def _apply(self, message: SessionMessage) -> None:
        session = self._session
        if session is None or not self._is_remote_topic(message.topic):
            logger.debug(
                f"Ignoring {type(message).__name__} for inactive topic {shorten(message.topic)}",
            )
            return

        match message:
            case SessionDeleted():
                self._session = None
                self._transition(ConnectionState.IDLE, "Session closed by Qubic Wallet.")
            case SessionEventReceived(chain_id=chain_id, name=name, data=data):
                if chain_id != QUBIC_CHAIN_ID or name not in QUBIC_EVENTS:
                    return
                if isinstance(data, list):
                    try:
                        accounts = msgspec.convert(data, list[QubicAccount])
                    except msgspec.ValidationError as e:
                        logger.warning(f"Ignoring malformed {name} payload: {e}")
                    else:
                        session.accounts = accounts
                self._transition(self._state, f"Wallet reported {name.replace('Changed', ' update')}.")
            case SessionUpdated(topic=topic):
                if self._client is None:
                    return
                record = self._client.session.get(topic)
                if record is not None:
                    self.hydrate(record)

    # Actions

    async def connect(self) -> None:
        """Connect through the native provider if present, else pair remotely."""
        self._attempt += 1
        attempt = self._attempt

        if self._native_provider is not None and self._has_native:
            await self._connect_native(self._native_provider, attempt)
        else:
            self._pairing_attempt = attempt
            try:
                await self._connect_remote(attempt)
            finally:
                if self._pairing_attempt == attempt:
                    self._pairing_attempt = None

    async def _teardown_remote(self, client: PairingClient) -> None:
        session = self._session
        if session is None or session.transport is not Transport.REMOTE:
            return
        logger.info(f"Disconnecting previous session {shorten(session.topic)}")
        await client.disconnect(session.topic, USER_DISCONNECTED)
        if self._session is session:
            self._session = None

    async def _connect_native(self, provider: NativeProvider, attempt: int) -> None:
        self._transition(ConnectionState.CONNECTING, "Requesting approval from installed Qubic Wallet…")
        try:
            if self._session is not None and self._session.transport is Transport.REMOTE:
                await self._teardown_remote(self._client or await self._pairing.get(self._project_id))

            response = await provider.request("qubic_requestAccounts")
            candidate = response[0] if isinstance(response, list) and response else response
            address, accounts = _account_from_native(candidate)
            if not address:
                raise ProtocolError("Unable to read account from native Qubic Wallet.")
        except Exception as e:
            if attempt == self._attempt:
                self._transition(
                    ConnectionState.ERROR,
                    str(e) or "Native Qubic Wallet rejected the connection.",
                )
            return

        if attempt != self._attempt:
            return
        self._session = QubicSession(
            topic=NATIVE_TOPIC,
            address=address,
            chain_id=QUBIC_CHAIN_ID,
            transport=Transport.NATIVE,
            wallet_name=QUBIC_WALLET_NAME,
            wallet_url=QUBIC_WALLET_URL,
            accounts=accounts,
        )
        logger.info(f"Linked {shorten(address)} via native provider")
        self._transition(ConnectionState.CONNECTED, f"Linked {shorten(address)} via native provider.")

    async def _connect_remote(self, attempt: int) -> None:
        if not self._project_id:
            self._transition(
                ConnectionState.ERROR,
                "Pairing project ID missing. Set QUBIC_LINK_PAIRING_PROJECT_ID.",
            )
            return

        self._transition(ConnectionState.CONNECTING, "Generating pairing URI…")
        try:
            client = self._client or await self._pairing.get(self._project_id)
            if self._client is None:
                self._client = client
                self._attach(client)

            await self._teardown_remote(client)

            result = await client.connect(QUBIC_OPTIONAL_NAMESPACES)
            if attempt != self._attempt:
                return
            if result.uri:
                self._pairing_uri = result.uri
                self._transition(self._state, "Scan the QR code in Qubic Wallet to approve.")

            record = await result.approval()
        except Exception as e:
            if attempt != self._attempt:
                logger.debug(f"Ignoring failure of a superseded pairing request: {e}")
                return
            self._pairing_uri = None
            self._fail_remote(e)
            return

        if attempt != self._attempt:
            logger.info(f"Ignoring approval of superseded pairing {shorten(record.topic)}")
            return

        self._pairing_uri = None
        if self.hydrate(record):
            await self.fetch_accounts_snapshot(client, record.topic)
        else:
            self._transition(ConnectionState.ERROR, "Approved session carries no Qubic account.")

    def _fail_remote(self, error: Exception) -> None:
        if isinstance(error, ConfigurationError):
            message = str(error)
        else:
            if not isinstance(error, ProtocolError):
                error = ProtocolError(
                    str(error) or "Remote pairing failed.",
                    using_fallback_project=self._using_fallback,
                )
            message = error.guidance
        logger.warning(f"Remote pairing failed: {error}")
        self._transition(ConnectionState.ERROR, message)

    async def disconnect(self) -> None:
        """Tear down the session. Does nothing when no session exists."""
        session = self._session
        if session is None:
            return

        if session.transport is Transport.REMOTE:
            try:
                client = self._client or await self._pairing.get(self._project_id)
                await client.disconnect(session.topic, USER_DISCONNECTED)
            except Exception as e:
                logger.warning(f"Failed to disconnect Qubic session: {e}")

        self._session = None
        self._transition(ConnectionState.IDLE, "Disconnected from Qubic Wallet.")

    def cancel_pairing(self) -> None:
        """Drop the in-flight pairing URI. A late approval is then ignored.

        A native connect in flight is not a pairing request and keeps running.
        """
        pending = self._pairing_attempt is not None and self._pairing_attempt == self._attempt
        if not pending and self._state is ConnectionState.CONNECTING:
            logger.debug("No remote pairing in flight; leaving native connect running")
            self._pairing_uri = None
            return
        if pending:
            self._attempt += 1
        self._pairing_attempt = None
        self._pairing_uri = None
        state = ConnectionState.CONNECTED if self._session is not None else ConnectionState.IDLE
        self._transition(state, "Pairing request cancelled.")
