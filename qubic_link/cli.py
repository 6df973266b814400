"""CLI entry point for qubic-link."""

import asyncio
import logging
import sys

from .config import Config, get_config
from .errors import ConfigurationError
from .plugins import load_factory
from .server import run_server

logger = logging.getLogger(__name__)

BACKEND_FIELDS = (
    "key_deriver",
    "pairing_client_factory",
    "vault_factory",
    "native_provider",
    "bridge_provider",
)


def setup_logging(log_level: str) -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # httpx logs every RPC request at INFO
    if log_level != "DEBUG":
        logging.getLogger("httpx").setLevel(logging.WARNING)


def check_backends(config: Config) -> None:
    """Resolve configured backend import strings so a typo fails at startup.

    Raises:
        ConfigurationError: If a backend cannot be imported

    """
    for name in BACKEND_FIELDS:
        import_string = getattr(config, name)
        if import_string is None:
            logger.debug(f"No {name} configured")
            continue
        load_factory(import_string)


def main() -> None:
    """Main entry point."""
    try:
        config = get_config()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.normalized_log_level)

    try:
        check_backends(config)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if config.effective_project_id is None:
        logger.warning("Remote pairing disabled: no pairing project id configured")

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        print("\nShutting down...")
        sys.exit(0)
    except Exception:
        logger.exception("Server error")
        sys.exit(1)
