"""Error taxonomy shared by the credential pipelines."""


class QubicLinkError(Exception):
    """Base class for all credential onboarding errors."""


class ValidationError(QubicLinkError):
    """Malformed seed, key or file shape. Raised before any I/O is attempted."""


class DerivationError(QubicLinkError):
    """The identity service rejected the secret material."""


class DecryptionError(QubicLinkError):
    """Wrong password or corrupt encrypted container."""


class EmptyResultError(QubicLinkError):
    """Well-formed input yielded zero usable accounts."""


class EmptyVaultError(EmptyResultError):
    """A plaintext vault produced no accounts."""


class NoSpendableSeedsError(EmptyResultError):
    """An unlocked container holds only watch-only entries."""


class EmptyDerivationError(EmptyResultError):
    """Every reveal/derive attempt on an unlocked container failed."""


class ConfigurationError(QubicLinkError):
    """A required identifier or backend is not configured."""


DASHBOARD_URL = "https://cloud.walletconnect.com"


class ProtocolError(QubicLinkError):
    """Pairing or session RPC failure.

    Origin rejections get two tiers of guidance depending on whether the
    shared demo project id or a user-supplied one is in use.
    """

    def __init__(self, message: str, using_fallback_project: bool = False) -> None:
        super().__init__(message)
        self.using_fallback_project = using_fallback_project

    @property
    def is_origin_rejection(self) -> bool:
        """Return True when the relay refused this application's origin."""
        message = str(self)
        return "origin not allowed" in message.lower() or "code: 3000" in message

    @property
    def guidance(self) -> str:
        """Return the user-facing message for this failure."""
        if not self.is_origin_rejection:
            return str(self)
        if self.using_fallback_project:
            return (
                "The demo pairing project ID doesn't allow this domain. Create your own "
                f"project at {DASHBOARD_URL}, whitelist this domain, and set "
                "QUBIC_LINK_PAIRING_PROJECT_ID."
            )
        return (
            f"The pairing relay rejected this origin. Add this domain to your project at "
            f"{DASHBOARD_URL} and verify QUBIC_LINK_PAIRING_PROJECT_ID is set correctly."
        )
