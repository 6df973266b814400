"""Tests for the extension bridge pipeline."""

from typing import Any

import pytest

from qubic_link.bridge import (
    DEFAULT_SNAP_ID,
    BridgePipeline,
    ProviderRequestError,
    is_snap_unavailable,
    resolve_installed_snap_id,
)
from qubic_link.models import ConnectionState, QubicAccount

from .conftest import WATCH_ONLY_ID, FakeProvider

SNAP_ACCOUNTS = [
    {"address": "A" * 60, "name": "First", "amount": 10},
    {"address": "B" * 60, "name": "Second"},
]


def snap_invoker(handlers: dict[str, Any]):
    """Route wallet_invokeSnap requests by inner method."""

    def invoke(params: dict[str, Any]) -> Any:
        method = params["request"]["method"]
        handler = handlers.get(method)
        if isinstance(handler, Exception):
            raise handler
        return handler

    return invoke


class TestResolveInstalledSnapId:
    def test_exact_match(self) -> None:
        snaps = {"a": {"id": DEFAULT_SNAP_ID}, "b": {"id": "local:other"}}
        assert resolve_installed_snap_id(snaps, DEFAULT_SNAP_ID) == DEFAULT_SNAP_ID

    def test_local_snap_with_package_suffix(self) -> None:
        snaps = {"dev": {"id": "local:http://localhost:8080/@ardata-tech/qubic-wallet"}}
        assert (
            resolve_installed_snap_id(snaps, DEFAULT_SNAP_ID)
            == "local:http://localhost:8080/@ardata-tech/qubic-wallet"
        )

    @pytest.mark.parametrize("snaps", [None, [], {"x": "not-a-dict"}, {}])
    def test_falls_back_to_target(self, snaps: Any) -> None:
        assert resolve_installed_snap_id(snaps, DEFAULT_SNAP_ID) == DEFAULT_SNAP_ID


def test_is_snap_unavailable() -> None:
    assert is_snap_unavailable(Exception("Snap npm:x was not found in the NPM registry"))
    assert is_snap_unavailable(Exception("Failed to fetch snap"))
    assert not is_snap_unavailable(Exception("User rejected the request."))


class TestBridgePipeline:
    @pytest.mark.asyncio
    async def test_unavailable_provider(self) -> None:
        pipeline = BridgePipeline(None)
        assert not pipeline.available
        assert pipeline.warning is not None

        state = await pipeline.connect()
        assert state is ConnectionState.ERROR
        assert pipeline.message == "MetaMask Flask with Snaps support is required."

    @pytest.mark.asyncio
    async def test_provider_not_present(self) -> None:
        pipeline = BridgePipeline(FakeProvider(available=False))
        await pipeline.connect()
        assert pipeline.state is ConnectionState.ERROR

    @pytest.mark.asyncio
    async def test_connect_loads_accounts(self) -> None:
        provider = FakeProvider(
            {
                "wallet_requestSnaps": {},
                "wallet_getSnaps": {"s": {"id": DEFAULT_SNAP_ID}},
                "wallet_invokeSnap": snap_invoker({"qubic_requestAccounts": SNAP_ACCOUNTS}),
            },
        )
        pipeline = BridgePipeline(provider)
        assert pipeline.warning is None

        state = await pipeline.connect()

        assert state is ConnectionState.CONNECTED
        assert [account.name for account in pipeline.accounts] == ["First", "Second"]
        assert pipeline.message == "Loaded 2 accounts via Qubic Snap."
        method, params = provider.calls[0]
        assert method == "wallet_requestSnaps"
        assert params == {DEFAULT_SNAP_ID: {"version": "1.0.7"}}

    @pytest.mark.asyncio
    async def test_falls_back_to_public_id(self) -> None:
        provider = FakeProvider(
            {
                "wallet_requestSnaps": {},
                "wallet_getSnaps": {},
                "wallet_invokeSnap": snap_invoker(
                    {
                        "qubic_requestAccounts": ProviderRequestError("Method not found", code=-32601),
                        "getPublicId": WATCH_ONLY_ID,
                    },
                ),
            },
        )
        pipeline = BridgePipeline(provider)
        await pipeline.connect()

        assert pipeline.state is ConnectionState.CONNECTED
        assert pipeline.accounts == [QubicAccount(address=WATCH_ONLY_ID, name="Qubic Snap")]
        assert pipeline.message == "Linked WWWW…WWWW via Qubic Snap."

    @pytest.mark.asyncio
    async def test_untolerated_error_propagates(self) -> None:
        provider = FakeProvider(
            {
                "wallet_requestSnaps": {},
                "wallet_getSnaps": {},
                "wallet_invokeSnap": snap_invoker(
                    {"qubic_requestAccounts": ProviderRequestError("User rejected", code=4001)},
                ),
            },
        )
        pipeline = BridgePipeline(provider)
        await pipeline.connect()

        assert pipeline.state is ConnectionState.ERROR
        assert pipeline.message == "User rejected"
        assert pipeline.accounts == []

    @pytest.mark.asyncio
    async def test_no_accounts_is_an_error(self) -> None:
        provider = FakeProvider(
            {
                "wallet_requestSnaps": {},
                "wallet_getSnaps": {},
                "wallet_invokeSnap": snap_invoker({"qubic_requestAccounts": [], "getPublicId": None}),
            },
        )
        pipeline = BridgePipeline(provider)
        await pipeline.connect()

        assert pipeline.state is ConnectionState.ERROR
        assert pipeline.message == "Qubic Snap is installed but returned no accounts."

    @pytest.mark.asyncio
    async def test_custom_snap_falls_back_to_default(self) -> None:
        def request_snaps(params: dict[str, Any]) -> dict[str, Any]:
            if "npm:custom-snap" in params:
                raise ProviderRequestError("Snap npm:custom-snap was not found in the NPM registry")
            return {}

        provider = FakeProvider(
            {
                "wallet_requestSnaps": request_snaps,
                "wallet_getSnaps": {},
                "wallet_invokeSnap": snap_invoker({"qubic_requestAccounts": SNAP_ACCOUNTS[:1]}),
            },
        )
        pipeline = BridgePipeline(provider, snap_id="npm:custom-snap")
        await pipeline.connect()

        assert pipeline.state is ConnectionState.CONNECTED
        installs = [params for method, params in provider.calls if method == "wallet_requestSnaps"]
        assert [next(iter(params)) for params in installs] == ["npm:custom-snap", DEFAULT_SNAP_ID]
        invoke = [params for method, params in provider.calls if method == "wallet_invokeSnap"][0]
        assert invoke["snapId"] == DEFAULT_SNAP_ID

    @pytest.mark.asyncio
    async def test_default_snap_failure_is_not_retried(self) -> None:
        provider = FakeProvider(
            {"wallet_requestSnaps": ProviderRequestError("Failed to fetch snap")},
        )
        pipeline = BridgePipeline(provider)
        await pipeline.connect()

        assert pipeline.state is ConnectionState.ERROR
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_listeners_notified(self) -> None:
        pipeline = BridgePipeline(None)
        states: list[ConnectionState] = []
        pipeline.add_listener(lambda: states.append(pipeline.state))

        await pipeline.connect()

        assert states == [ConnectionState.CONNECTING, ConnectionState.ERROR]
