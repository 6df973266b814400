"""Health check and status endpoints."""

from litestar import Controller, get

from qubic_link.dashboard import Dashboard

from .base import HealthResponse, StatusResponse


class HealthController(Controller):  # type: ignore[misc]
    """Health check endpoints."""

    path = "/"

    @get("/health")  # type: ignore[untyped-decorator]
    async def health(self, dashboard: Dashboard) -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="healthy", session_state=dashboard.session.state)


class StatusController(Controller):  # type: ignore[misc]
    """Aggregated pipeline status."""

    path = "/api/v1/status"

    @get()  # type: ignore[untyped-decorator]
    async def status(self, dashboard: Dashboard) -> StatusResponse:
        """GET /api/v1/status - Status descriptors in display order."""
        return StatusResponse(data=dashboard.status)
