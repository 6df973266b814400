"""Resolution of configured external-service backends.

Backends are configured as `module:attribute` import strings naming a
factory callable.
"""

import logging
import pkgutil
from collections.abc import Callable
from typing import Any

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def load_factory(import_string: str | None) -> Callable[..., Any] | None:
    """Resolve an import string to a callable.

    Args:
        import_string: `module:attribute` (or dotted) path, or None

    Returns:
        The callable, or None when no import string is configured

    Raises:
        ConfigurationError: If the target cannot be imported or is not callable

    """
    if not import_string:
        return None

    try:
        target = pkgutil.resolve_name(import_string)
    except (ImportError, AttributeError, ValueError) as e:
        raise ConfigurationError(f"Unable to load backend {import_string!r}: {e}") from e

    if not callable(target):
        raise ConfigurationError(f"Backend {import_string!r} is not callable")

    logger.info(f"Loaded backend {import_string}")
    return target


def load_instance(import_string: str | None) -> Any:
    """Resolve an import string and call it with no arguments."""
    factory = load_factory(import_string)
    if factory is None:
        return None
    try:
        return factory()
    except Exception as e:
        raise ConfigurationError(f"Backend {import_string!r} failed to initialize: {e}") from e
