"""HTTP route handlers for the credential dashboard with Litestar.

This package provides controller modules for different API endpoints:
- health: Health check and aggregated status endpoints
- session: Wallet session and extension bridge endpoints
- credentials: Seed and vault import endpoints
"""

from litestar import Router

from .credentials import SeedController, VaultController
from .health import HealthController, StatusController
from .session import BridgeController, SessionController


def get_routers() -> list[Router]:
    """Get all routers for the application."""
    return [
        Router(path="/", route_handlers=[HealthController, StatusController]),
        Router(path="/", route_handlers=[SessionController, BridgeController]),
        Router(path="/", route_handlers=[SeedController, VaultController]),
    ]


__all__ = [
    "BridgeController",
    "HealthController",
    "SeedController",
    "SessionController",
    "StatusController",
    "VaultController",
    "get_routers",
]
