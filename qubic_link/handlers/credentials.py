"""Seed and vault import endpoints."""

import logging
from typing import Any

from litestar import Controller, Request, get, post
from litestar.exceptions import ValidationException
from litestar.status_codes import HTTP_200_OK

from qubic_link.dashboard import Dashboard
from qubic_link.vault import MAX_VAULT_SIZE

from .base import (
    SeedSubmitRequest,
    SeedView,
    SeedVisibilityRequest,
    VaultUnlockRequest,
    VaultView,
    build_seed_view,
    build_vault_view,
    validate_request,
)

logger = logging.getLogger(__name__)

DEFAULT_VAULT_FILE_NAME = "vault.json"


class SeedController(Controller):  # type: ignore[misc]
    """Seed import endpoints."""

    path = "/api/v1/seed"

    @get()  # type: ignore[untyped-decorator]
    async def get_seed(self, dashboard: Dashboard) -> SeedView:
        """GET /api/v1/seed - Current seed view."""
        return build_seed_view(dashboard.seed)

    @post(status_code=HTTP_200_OK)  # type: ignore[untyped-decorator]
    async def submit_seed(self, data: dict[str, Any], dashboard: Dashboard) -> SeedView:
        """POST /api/v1/seed - Classify and import seed material."""
        submit_request = validate_request(data, SeedSubmitRequest)
        await dashboard.seed.submit(submit_request.seed)
        return build_seed_view(dashboard.seed)

    @post("/visibility", status_code=HTTP_200_OK)  # type: ignore[untyped-decorator]
    async def set_visibility(self, data: dict[str, Any], dashboard: Dashboard) -> SeedView:
        """POST /api/v1/seed/visibility - Reveal, hide or toggle the private key."""
        visibility_request = validate_request(data, SeedVisibilityRequest)
        dashboard.seed.set_visible(visibility_request.visible)
        return build_seed_view(dashboard.seed)

    @post("/reset", status_code=HTTP_200_OK)  # type: ignore[untyped-decorator]
    async def reset(self, dashboard: Dashboard) -> SeedView:
        """POST /api/v1/seed/reset - Drop derived material."""
        dashboard.seed.reset()
        return build_seed_view(dashboard.seed)


class VaultController(Controller):  # type: ignore[misc]
    """Vault file import endpoints."""

    path = "/api/v1/vault"

    @get()  # type: ignore[untyped-decorator]
    async def get_vault(self, dashboard: Dashboard) -> VaultView:
        """GET /api/v1/vault - Current vault view."""
        return build_vault_view(dashboard.vault)

    @post(status_code=HTTP_200_OK)  # type: ignore[untyped-decorator]
    async def upload_vault(self, request: Request, dashboard: Dashboard) -> VaultView:
        """POST /api/v1/vault - Upload a vault file as the raw request body.

        The file name is taken from the X-File-Name header.
        """
        body = await request.body()
        if not body:
            raise ValidationException(detail="Vault file is empty.")
        if len(body) > MAX_VAULT_SIZE:
            raise ValidationException(detail="Vault file is too large.")

        file_name = request.headers.get("X-File-Name") or DEFAULT_VAULT_FILE_NAME
        await dashboard.vault.select_file(body, file_name)
        return build_vault_view(dashboard.vault)

    @post("/unlock", status_code=HTTP_200_OK)  # type: ignore[untyped-decorator]
    async def unlock(self, data: dict[str, Any], dashboard: Dashboard) -> VaultView:
        """POST /api/v1/vault/unlock - Unlock the staged encrypted vault."""
        unlock_request = validate_request(data, VaultUnlockRequest)
        await dashboard.vault.unlock(unlock_request.password)
        return build_vault_view(dashboard.vault)

    @post("/reset", status_code=HTTP_200_OK)  # type: ignore[untyped-decorator]
    async def reset(self, dashboard: Dashboard) -> VaultView:
        """POST /api/v1/vault/reset - Discard any staged upload."""
        dashboard.vault.reset()
        return build_vault_view(dashboard.vault)
