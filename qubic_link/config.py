"""Configuration management using msgspec Struct."""

import argparse
import os

import msgspec

FALLBACK_PROJECT_ID = "197942ee5616373eb5a46007404eeffe"
ENV_PREFIX = "QUBIC_LINK_"


class Config(msgspec.Struct, frozen=True):
    """Application configuration using msgspec Struct."""

    # HTTP server settings
    host: str = "127.0.0.1"
    port: int = 8080

    # Logging
    log_level: str = "INFO"

    # Metrics settings
    metrics_host: str = "127.0.0.1"
    metrics_port: int = 8081

    # Pairing protocol
    pairing_project_id: str | None = None
    use_fallback_project_id: bool = True
    app_url: str = "http://localhost:3000"

    # Identity RPC
    rpc_url: str = "https://rpc.qubic.org"

    # Extension bridge
    bridge_snap_id: str = "npm:@ardata-tech/qubic-wallet"
    bridge_snap_version: str = "1.0.7"

    # Native provider detection
    provider_poll_interval: float = 3.0

    # External service backends (module:attribute import strings)
    key_deriver: str | None = None
    pairing_client_factory: str | None = None
    vault_factory: str | None = None
    native_provider: str | None = None
    bridge_provider: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if self.port < 1 or self.port > 65535:
            raise ValueError(f"port must be between 1 and 65535, got {self.port}")

        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.log_level.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got {self.log_level}")

        if self.metrics_port < 1 or self.metrics_port > 65535:
            raise ValueError(f"metrics_port must be between 1 and 65535, got {self.metrics_port}")

        if not self.rpc_url.startswith(("http://", "https://")):
            raise ValueError(f"rpc_url must start with http:// or https://, got {self.rpc_url}")

        if self.provider_poll_interval <= 0:
            raise ValueError(
                f"provider_poll_interval must be positive, got {self.provider_poll_interval}"
            )

        if not self.bridge_snap_id:
            raise ValueError("bridge_snap_id must not be empty")

        for name in (
            "key_deriver",
            "pairing_client_factory",
            "vault_factory",
            "native_provider",
            "bridge_provider",
        ):
            value = getattr(self, name)
            if value is not None and not value.strip():
                raise ValueError(f"{name} must not be blank")

    @property
    def normalized_log_level(self) -> str:
        """Return normalized uppercase log level."""
        return self.log_level.upper()

    @property
    def effective_project_id(self) -> str | None:
        """Return the pairing project id in use, falling back to the demo id."""
        if self.pairing_project_id and self.pairing_project_id.strip():
            return self.pairing_project_id.strip()
        if self.use_fallback_project_id:
            return FALLBACK_PROJECT_ID
        return None

    @property
    def using_fallback_project_id(self) -> bool:
        """Return True when the shared demo project id is in use."""
        return self.effective_project_id == FALLBACK_PROJECT_ID and not (
            self.pairing_project_id and self.pairing_project_id.strip()
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="qubic-link - Qubic credential onboarding and wallet session service",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("--host", default="127.0.0.1", help="HTTP server host")
    parser.add_argument("-p", "--port", type=int, default=8080, help="HTTP server port")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Logging level",
    )
    parser.add_argument("--metrics-port", type=int, default=8081, help="Port for metrics server")
    parser.add_argument("--metrics-host", default="127.0.0.1", help="Host for metrics server")
    parser.add_argument(
        "--pairing-project-id",
        default=None,
        help="Pairing protocol project id (defaults to the shared demo project)",
    )
    parser.add_argument(
        "--no-fallback-project-id",
        action="store_true",
        default=False,
        help="Do not fall back to the shared demo project id",
    )
    parser.add_argument(
        "--app-url",
        default="http://localhost:3000",
        help="Origin advertised to paired wallets",
    )
    parser.add_argument("--rpc-url", default="https://rpc.qubic.org", help="Qubic RPC endpoint")
    parser.add_argument(
        "--bridge-snap-id",
        default="npm:@ardata-tech/qubic-wallet",
        help="Extension snap id to install",
    )
    parser.add_argument("--bridge-snap-version", default="1.0.7", help="Extension snap version")
    parser.add_argument(
        "--provider-poll-interval",
        type=float,
        default=3.0,
        help="Seconds between native provider detection polls",
    )
    parser.add_argument(
        "--key-deriver",
        default=None,
        help="Import path (module:attr) of the key derivation backend factory",
    )
    parser.add_argument(
        "--pairing-client-factory",
        default=None,
        help="Import path (module:attr) of the async pairing client factory",
    )
    parser.add_argument(
        "--vault-factory",
        default=None,
        help="Import path (module:attr) of the vault container factory",
    )
    parser.add_argument(
        "--native-provider",
        default=None,
        help="Import path (module:attr) of the native wallet provider factory",
    )
    parser.add_argument(
        "--bridge-provider",
        default=None,
        help="Import path (module:attr) of the extension bridge provider factory",
    )
    return parser


def get_config(argv: list[str] | None = None) -> Config:
    """Parse command line arguments and return configuration.

    When QUBIC_LINK_CONFIG=env is set (as the ASGI entry point does for
    worker processes), configuration is read from QUBIC_LINK_* environment
    variables instead of CLI args.
    """
    if os.environ.get(f"{ENV_PREFIX}CONFIG") == "env":
        return _get_config_from_env()

    args = _build_parser().parse_args(argv)

    config_dict: dict[str, object] = {
        "host": args.host,
        "port": args.port,
        "log_level": args.log_level,
        "metrics_port": args.metrics_port,
        "metrics_host": args.metrics_host,
        "pairing_project_id": args.pairing_project_id,
        "use_fallback_project_id": not args.no_fallback_project_id,
        "app_url": args.app_url,
        "rpc_url": args.rpc_url,
        "bridge_snap_id": args.bridge_snap_id,
        "bridge_snap_version": args.bridge_snap_version,
        "provider_poll_interval": args.provider_poll_interval,
        "key_deriver": args.key_deriver,
        "pairing_client_factory": args.pairing_client_factory,
        "vault_factory": args.vault_factory,
        "native_provider": args.native_provider,
        "bridge_provider": args.bridge_provider,
    }

    try:
        config = msgspec.convert(config_dict, Config)
    except msgspec.ValidationError as e:
        raise ValueError(f"Configuration validation error: {e}")

    return config


def _env(name: str, default: str | None = None) -> str | None:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _get_config_from_env() -> Config:
    """Load configuration from QUBIC_LINK_* environment variables."""
    config_dict: dict[str, object] = {
        "host": _env("HOST", "127.0.0.1"),
        "port": int(_env("PORT", "8080") or "8080"),
        "log_level": _env("LOG_LEVEL", "INFO"),
        "metrics_port": int(_env("METRICS_PORT", "8081") or "8081"),
        "metrics_host": _env("METRICS_HOST", "127.0.0.1"),
        "pairing_project_id": _env("PAIRING_PROJECT_ID") or None,
        "use_fallback_project_id": (_env("USE_FALLBACK_PROJECT_ID", "true") or "").lower()
        not in {"0", "false", "no"},
        "app_url": _env("APP_URL", "http://localhost:3000"),
        "rpc_url": _env("RPC_URL") or "https://rpc.qubic.org",
        "bridge_snap_id": _env("BRIDGE_SNAP_ID") or "npm:@ardata-tech/qubic-wallet",
        "bridge_snap_version": _env("BRIDGE_SNAP_VERSION") or "1.0.7",
        "provider_poll_interval": float(_env("PROVIDER_POLL_INTERVAL", "3.0") or "3.0"),
        "key_deriver": _env("KEY_DERIVER") or None,
        "pairing_client_factory": _env("PAIRING_CLIENT_FACTORY") or None,
        "vault_factory": _env("VAULT_FACTORY") or None,
        "native_provider": _env("NATIVE_PROVIDER") or None,
        "bridge_provider": _env("BRIDGE_PROVIDER") or None,
    }

    try:
        config = msgspec.convert(config_dict, Config)
    except msgspec.ValidationError as e:
        raise ValueError(f"Configuration validation error: {e}")

    return config
