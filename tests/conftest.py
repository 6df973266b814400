"""Test fixtures and fake external services."""

import asyncio
import hashlib
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
from litestar.testing import AsyncTestClient

from qubic_link.config import Config
from qubic_link.dashboard import Dashboard, create_dashboard
from qubic_link.identity import IdentityResolver
from qubic_link.models import DerivedIdentity
from qubic_link.pairing import (
    ConnectResult,
    PairingClientCache,
    PairingNamespace,
    PairingSession,
    PeerMetadata,
    build_metadata,
)
from qubic_link.server import create_app
from qubic_link.session import SessionMachine
from qubic_link.vault import VaultSecret

QUBIC_SEED = "a" * 55
OTHER_QUBIC_SEED = "b" * 55
PRIVATE_KEY_HEX = "ab" * 32
WATCH_ONLY_ID = "W" * 60


def identity_for(secret: str) -> str:
    """Deterministic 60-letter public identity for a secret."""
    digest = hashlib.sha256(secret.encode()).digest() * 2
    return "".join(chr(ord("A") + byte % 26) for byte in digest)[:60]


class FakeIdentityService:
    """In-memory identity service with call tracking."""

    def __init__(self) -> None:
        self.failing_secrets: set[str] = set()
        self.derive_calls: list[str] = []
        self.balance_calls: list[str] = []
        self.balance: str | None = "1000"
        self.owned_assets: int | None = 2
        self.balance_error: Exception | None = None

    def _identity(self, secret: str) -> DerivedIdentity:
        self.derive_calls.append(secret)
        if secret in self.failing_secrets:
            raise ValueError("malformed secret")
        return DerivedIdentity(
            public_id=identity_for(secret),
            public_key_hex=hashlib.sha256(secret.encode()).hexdigest(),
            private_key_hex=hashlib.sha256(b"priv" + secret.encode()).hexdigest(),
        )

    async def derive_from_seed(self, seed: str) -> DerivedIdentity:
        return self._identity(seed)

    async def derive_from_private_key(self, private_key_hex: str) -> DerivedIdentity:
        return self._identity(private_key_hex)

    async def get_balance(self, public_id: str) -> str | None:
        self.balance_calls.append(public_id)
        if self.balance_error is not None:
            raise self.balance_error
        return self.balance

    async def get_owned_assets(self, public_id: str) -> int | None:
        return self.owned_assets


class FakeSessionStore:
    def __init__(self) -> None:
        self.records: dict[str, PairingSession] = {}

    def get_all(self) -> list[PairingSession]:
        return list(self.records.values())

    def get(self, topic: str) -> PairingSession | None:
        return self.records.get(topic)


def make_pairing_session(
    topic: str = "topic-1",
    address: str = WATCH_ONLY_ID,
    expiry: int | None = 4_102_444_800,
    name: str = "Qubic Mobile",
) -> PairingSession:
    return PairingSession(
        topic=topic,
        namespaces={"qubic": PairingNamespace(accounts=[f"qubic:mainnet:{address}"])},
        expiry=expiry,
        peer=PeerMetadata(name=name, url="https://wallet.qubic.org/"),
    )


class FakePairingClient:
    """Pairing client whose approvals are resolved by the test."""

    def __init__(self) -> None:
        self.session = FakeSessionStore()
        self.handlers: dict[str, list[Callable[[dict[str, Any]], None]]] = {}
        self.disconnects: list[str] = []
        self.requests: list[tuple[str, str]] = []
        self.accounts_response: Any = [{"address": WATCH_ONLY_ID, "name": "Main", "amount": 5}]
        self.request_error: Exception | None = None
        self.connect_error: Exception | None = None
        self.disconnect_error: Exception | None = None
        self.pending: list[asyncio.Future[PairingSession]] = []
        self.uri_counter = 0

    async def connect(self, optional_namespaces: dict[str, Any]) -> ConnectResult:
        if self.connect_error is not None:
            raise self.connect_error
        future: asyncio.Future[PairingSession] = asyncio.get_running_loop().create_future()
        self.pending.append(future)
        self.uri_counter += 1

        async def approval() -> PairingSession:
            record = await future
            self.session.records[record.topic] = record
            return record

        return ConnectResult(uri=f"wc:pairing-{self.uri_counter}@2", approval=approval)

    async def request(self, topic: str, chain_id: str, method: str, params: Any) -> Any:
        self.requests.append((topic, method))
        if self.request_error is not None:
            raise self.request_error
        return self.accounts_response

    async def disconnect(self, topic: str, reason: dict[str, Any]) -> None:
        self.disconnects.append(topic)
        if self.disconnect_error is not None:
            raise self.disconnect_error
        self.session.records.pop(topic, None)

    def on(self, event: str, handler: Callable[[dict[str, Any]], None]) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Callable[[dict[str, Any]], None]) -> None:
        self.handlers.get(event, []).remove(handler)

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        for handler in list(self.handlers.get(event, [])):
            handler(payload)

    def approve(self, record: PairingSession) -> None:
        self.pending.pop(0).set_result(record)

    def reject(self, error: Exception) -> None:
        self.pending.pop(0).set_exception(error)


class FakeVaultContainer:
    def __init__(self, password: str = "hunter2", secrets: list[VaultSecret] | None = None) -> None:
        self.password = password
        self.secrets = secrets if secrets is not None else []
        self.seeds: dict[str, str] = {}
        self.unlock_calls = 0

    async def unlock(self, is_vault_file: bool, password: str, config_file: Any = None, file: Any = None) -> bool:
        self.unlock_calls += 1
        return password == self.password

    def list_secrets(self) -> list[VaultSecret]:
        return list(self.secrets)

    async def reveal_secret(self, public_id: str) -> str:
        if public_id not in self.seeds:
            raise KeyError(public_id)
        return self.seeds[public_id]


class FakeProvider:
    """Native or bridge provider answering from a method table."""

    def __init__(self, responses: dict[str, Any] | None = None, available: bool = True) -> None:
        self.responses = responses or {}
        self.available = available
        self.calls: list[tuple[str, Any]] = []

    def is_available(self) -> bool:
        return self.available

    async def request(self, method: str, params: Any = None) -> Any:
        self.calls.append((method, params))
        response = self.responses.get(method)
        if callable(response):
            return response(params)
        if isinstance(response, Exception):
            raise response
        return response


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the event loop until a condition holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0)


@pytest.fixture
def config() -> Config:
    """Create a test configuration."""
    return Config(host="127.0.0.1", port=8080, log_level="DEBUG", pairing_project_id="test-project")


@pytest.fixture
def identity_service() -> FakeIdentityService:
    return FakeIdentityService()


@pytest.fixture
def resolver(identity_service: FakeIdentityService) -> IdentityResolver:
    return IdentityResolver(identity_service)


@pytest.fixture
def pairing_client() -> FakePairingClient:
    return FakePairingClient()


@pytest.fixture
def pairing_cache(pairing_client: FakePairingClient) -> PairingClientCache:
    async def factory(project_id: str, metadata: PeerMetadata) -> FakePairingClient:
        return pairing_client

    return PairingClientCache(factory, build_metadata("http://localhost:3000"))


@pytest.fixture
def machine(pairing_cache: PairingClientCache) -> SessionMachine:
    return SessionMachine(pairing_cache, project_id="test-project")


@pytest.fixture
def dashboard(
    config: Config,
    identity_service: FakeIdentityService,
    pairing_client: FakePairingClient,
) -> Dashboard:
    async def pairing_factory(project_id: str, metadata: PeerMetadata) -> FakePairingClient:
        return pairing_client

    return create_dashboard(
        config,
        identity_service=identity_service,
        pairing_client_factory=pairing_factory,
        vault_factory=lambda: FakeVaultContainer(),
    )


@pytest.fixture
async def client(dashboard: Dashboard) -> AsyncGenerator[AsyncTestClient, None]:
    """Create a test client."""
    app = create_app(dashboard=dashboard)
    async with AsyncTestClient(app) as client:
        yield client
