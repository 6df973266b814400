"""Litestar server setup with Granian ASGI server."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from granian import Granian
from granian.constants import Interfaces
from litestar import Litestar
from litestar.datastructures import State
from litestar.di import Provide

from .dashboard import Dashboard, create_dashboard
from .handlers import get_routers
from .metrics import MetricsController, MetricsServer

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from .config import Config

logger = logging.getLogger(__name__)


# Dependency providers for Litestar DI


def provide_dashboard(state: State) -> Dashboard:
    """Provide the Dashboard from application state.

    This dependency provider allows handlers to receive the Dashboard
    via dependency injection instead of accessing request.app.state directly.
    """
    result: Dashboard = state["dashboard"]
    return result


def create_app(
    config: Config | None = None,
    dashboard: Dashboard | None = None,
) -> Litestar:
    """Create and configure the Litestar application.

    Args:
        config: Application configuration used to build the dashboard
        dashboard: Prebuilt dashboard (e.g., with fake backends in tests)

    """
    if dashboard is None:
        if config is None:
            from .config import Config

            config = Config()
        dashboard = create_dashboard(config)

    @asynccontextmanager
    async def lifespan(_app: Litestar) -> AsyncGenerator[None]:
        """Lifespan context manager for startup/shutdown."""
        logger.info("Starting qubic-link server")
        await dashboard.start()
        try:
            yield
        finally:
            await dashboard.stop()
            logger.info("Stopping qubic-link server")

    return Litestar(
        route_handlers=[*get_routers(), MetricsController],
        lifespan=[lifespan],
        debug=False,
        state=State({"dashboard": dashboard}),
        dependencies={
            "dashboard": Provide(provide_dashboard, sync_to_thread=False),
        },
    )


async def run_server(config: Config) -> None:
    """Run the Litestar server with Granian.

    A single worker is used because pipeline and session state live in
    process memory.
    """
    logger.info(f"Starting qubic-link on {config.host}:{config.port}")

    # Import asgi module to store config
    from . import asgi

    asgi.store_config_in_env(config)

    server = Granian(
        target="qubic_link.asgi:app",
        address=config.host,
        port=config.port,
        interface=Interfaces.ASGI,
        workers=1,
        log_level=config.log_level.lower(),
    )

    metrics_server = MetricsServer(host=config.metrics_host, port=config.metrics_port)
    metrics_server.start()

    try:
        server.serve()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        metrics_server.stop()
