"""qubic-link - Qubic credential onboarding and wallet session service."""

__version__ = "0.1.0"
