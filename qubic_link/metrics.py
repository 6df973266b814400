"""Prometheus metrics for qubic-link with standalone HTTP server.

This module defines and exposes all Prometheus metrics used by qubic-link.
Metrics are served on a separate port using prometheus_client's built-in
HTTP server, and through `MetricsController` for in-app scraping.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from litestar import Controller, get
from litestar.response import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    start_http_server,
)

if TYPE_CHECKING:
    from http.server import ThreadingHTTPServer
    from wsgiref.simple_server import WSGIServer

logger = logging.getLogger(__name__)

REGISTRY = CollectorRegistry()

# Application info
APP_INFO = Info(
    "qubic_link_build_info",
    "Build information about qubic-link",
    registry=REGISTRY,
)
APP_INFO.info({"version": "0.1.0", "name": "qubic-link"})

# Pipeline metrics
CREDENTIAL_IMPORTS_TOTAL = Counter(
    "credential_imports_total",
    "Completed credential imports by pipeline and outcome",
    ["pipeline", "outcome"],
    registry=REGISTRY,
)

VAULT_ENTRIES_DROPPED_TOTAL = Counter(
    "vault_entries_dropped_total",
    "Vault entries dropped during derivation",
    ["reason"],
    registry=REGISTRY,
)

SESSION_TRANSITIONS_TOTAL = Counter(
    "session_transitions_total",
    "Session state machine transitions by target state",
    ["state"],
    registry=REGISTRY,
)

# Identity service metrics
IDENTITY_SNAPSHOT_REQUESTS_TOTAL = Counter(
    "identity_snapshot_requests_total",
    "Identity snapshot lookups by cache result",
    ["result"],
    registry=REGISTRY,
)

IDENTITY_SNAPSHOT_CACHE_SIZE = Gauge(
    "identity_snapshot_cache_size",
    "Number of cached identity snapshots",
    registry=REGISTRY,
)

IDENTITY_DERIVATION_DURATION_SECONDS = Histogram(
    "identity_derivation_duration_seconds",
    "Time spent deriving identities",
    ["kind"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=REGISTRY,
)


def get_metrics_output() -> bytes:
    """Generate Prometheus-formatted metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


class MetricsController(Controller):  # type: ignore[misc]
    """Prometheus metrics HTTP endpoint served by the main app."""

    path = "/"

    @get("/metrics")  # type: ignore[untyped-decorator]
    async def metrics(self) -> Response:
        """Handler for the /metrics endpoint."""
        return Response(
            content=get_metrics_output(),
            headers={"Content-Type": get_metrics_content_type()},
        )


class MetricsServer:
    """Standalone Prometheus metrics HTTP server using prometheus_client.start_http_server.

    This runs the metrics endpoint on a separate port from the main API,
    allowing metrics to be scraped independently.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 8081) -> None:
        self._host = host
        self._port = port
        self._httpd: WSGIServer | ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start the metrics server in a background thread."""
        self._thread = threading.Thread(
            target=self._run_server,
            daemon=True,
        )
        self._thread.start()
        logger.info(
            f"Metrics server started at http://{self._host}:{self._port}/metrics",
        )

    def _run_server(self) -> None:
        """Run the HTTP server (called in background thread)."""
        try:
            server, _ = start_http_server(
                port=self._port,
                addr=self._host,
                registry=REGISTRY,
            )
            self._httpd = server
        except Exception:
            logger.exception("Failed to start metrics server")
            raise

    def stop(self) -> None:
        """Stop the metrics server."""
        if self._httpd is not None:
            try:
                self._httpd.shutdown()
                self._httpd.server_close()
            except Exception:
                logger.exception("Error stopping metrics server")
            finally:
                self._httpd = None

        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None

        logger.info("Metrics server stopped")
