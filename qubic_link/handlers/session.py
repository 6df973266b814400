"""Wallet session endpoints (native provider and remote pairing)."""

import logging

from litestar import Controller, get, post
from litestar.status_codes import HTTP_200_OK

from qubic_link.dashboard import Dashboard

from .base import BridgeView, SessionView, build_bridge_view, build_session_view

logger = logging.getLogger(__name__)


class SessionController(Controller):  # type: ignore[misc]
    """Linked wallet session endpoints.

    Connect suspends until the wallet approves or the pairing fails; the
    pairing URI is visible through GET while the connect request is
    pending.
    """

    path = "/api/v1/session"

    @get()  # type: ignore[untyped-decorator]
    async def get_session(self, dashboard: Dashboard) -> SessionView:
        """GET /api/v1/session - Current session view."""
        return build_session_view(dashboard.session)

    @post("/connect", status_code=HTTP_200_OK)  # type: ignore[untyped-decorator]
    async def connect(self, dashboard: Dashboard) -> SessionView:
        """POST /api/v1/session/connect - Connect natively or start remote pairing."""
        await dashboard.session.connect()
        return build_session_view(dashboard.session)

    @post("/disconnect", status_code=HTTP_200_OK)  # type: ignore[untyped-decorator]
    async def disconnect(self, dashboard: Dashboard) -> SessionView:
        """POST /api/v1/session/disconnect - Tear down the active session."""
        await dashboard.session.disconnect()
        return build_session_view(dashboard.session)

    @post("/cancel", status_code=HTTP_200_OK)  # type: ignore[untyped-decorator]
    async def cancel_pairing(self, dashboard: Dashboard) -> SessionView:
        """POST /api/v1/session/cancel - Drop the in-flight pairing request."""
        dashboard.session.cancel_pairing()
        return build_session_view(dashboard.session)


class BridgeController(Controller):  # type: ignore[misc]
    """Extension bridge endpoints."""

    path = "/api/v1/bridge"

    @get()  # type: ignore[untyped-decorator]
    async def get_bridge(self, dashboard: Dashboard) -> BridgeView:
        """GET /api/v1/bridge - Current bridge view."""
        return build_bridge_view(dashboard.bridge)

    @post("/connect", status_code=HTTP_200_OK)  # type: ignore[untyped-decorator]
    async def connect(self, dashboard: Dashboard) -> BridgeView:
        """POST /api/v1/bridge/connect - Install the snap and load its accounts."""
        await dashboard.bridge.connect()
        return build_bridge_view(dashboard.bridge)
