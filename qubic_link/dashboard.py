"""Status aggregation and the façade owning the four pipelines."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .bridge import BridgePipeline
from .identity import IdentityResolver, RpcIdentityService
from .models import ChangeNotifier, StatusDescriptor
from .pairing import PairingClientCache, build_metadata
from .plugins import load_factory, load_instance
from .seed import SeedImporter
from .session import SessionMachine
from .vault import VaultImporter

if TYPE_CHECKING:
    from .config import Config
    from .identity import IdentityService

logger = logging.getLogger(__name__)

SESSION_LABEL = "Qubic Wallet"
BRIDGE_LABEL = "MetaMask"
SEED_LABEL = "Seed Import"
VAULT_LABEL = "Vault File"


def build_status_descriptors(
    session: SessionMachine,
    bridge: BridgePipeline,
    seed: SeedImporter,
    vault: VaultImporter,
) -> list[StatusDescriptor]:
    """Project the four pipelines onto status descriptors, in display order."""
    return [
        StatusDescriptor(label=SESSION_LABEL, state=session.state, description=session.message),
        StatusDescriptor(label=BRIDGE_LABEL, state=bridge.state, description=bridge.message),
        StatusDescriptor(
            label=SEED_LABEL,
            state=seed.connection_state,
            description=seed.state.message,
        ),
        StatusDescriptor(
            label=VAULT_LABEL,
            state=vault.connection_state,
            description=vault.state.message,
        ),
    ]


class Dashboard(ChangeNotifier):
    """Owns the session, bridge, seed and vault pipelines.

    The status list is recomputed whenever any pipeline reports a change,
    and listeners of the dashboard are notified in turn.
    """

    def __init__(
        self,
        session: SessionMachine,
        bridge: BridgePipeline,
        seed: SeedImporter,
        vault: VaultImporter,
        identity_service: IdentityService | None = None,
    ) -> None:
        super().__init__()
        self.session = session
        self.bridge = bridge
        self.seed = seed
        self.vault = vault
        self._identity_service = identity_service
        self._status = build_status_descriptors(session, bridge, seed, vault)
        for pipeline in self._pipelines():
            pipeline.add_listener(self._refresh)

    def _pipelines(self) -> tuple[ChangeNotifier, ...]:
        return (self.session, self.bridge, self.seed, self.vault)

    def _refresh(self) -> None:
        self._status = build_status_descriptors(self.session, self.bridge, self.seed, self.vault)
        self._notify()

    @property
    def status(self) -> list[StatusDescriptor]:
        return list(self._status)

    async def start(self) -> None:
        """Start session auto-resume, protocol listeners and provider polling."""
        logger.info("Starting credential dashboard")
        await self.session.start()

    async def stop(self) -> None:
        """Detach listeners and release external resources."""
        logger.info("Stopping credential dashboard")
        await self.session.stop()
        for pipeline in self._pipelines():
            pipeline.remove_listener(self._refresh)
        aclose = getattr(self._identity_service, "aclose", None)
        if aclose is not None:
            await aclose()


def create_dashboard(config: Config, **overrides: Any) -> Dashboard:
    """Build a dashboard from configuration.

    Backends named in the configuration are resolved here; keyword
    overrides (`identity_service`, `pairing_client_factory`,
    `vault_factory`, `native_provider`, `bridge_provider`) take precedence.
    """
    identity_service = overrides.get("identity_service")
    if identity_service is None:
        identity_service = RpcIdentityService(
            rpc_url=config.rpc_url,
            deriver=load_instance(config.key_deriver),
        )
    resolver = IdentityResolver(identity_service)

    pairing_factory = overrides.get("pairing_client_factory") or load_factory(
        config.pairing_client_factory,
    )
    vault_factory = overrides.get("vault_factory") or load_factory(config.vault_factory)
    native_provider = overrides.get("native_provider") or load_instance(config.native_provider)
    bridge_provider = overrides.get("bridge_provider") or load_instance(config.bridge_provider)

    session = SessionMachine(
        PairingClientCache(pairing_factory, build_metadata(config.app_url)),
        project_id=config.effective_project_id,
        using_fallback_project_id=config.using_fallback_project_id,
        native_provider=native_provider,
        poll_interval=config.provider_poll_interval,
    )
    bridge = BridgePipeline(
        bridge_provider,
        snap_id=config.bridge_snap_id,
        snap_version=config.bridge_snap_version,
    )

    if config.using_fallback_project_id:
        logger.warning("Using the shared demo pairing project id; set your own for production")

    return Dashboard(
        session=session,
        bridge=bridge,
        seed=SeedImporter(resolver),
        vault=VaultImporter(resolver, vault_factory),
        identity_service=identity_service,
    )
