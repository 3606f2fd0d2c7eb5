"""Error taxonomy shared by the router, providers and HTTP layer."""
from __future__ import annotations


class RelayError(Exception):
    """Base class for errors that map onto an HTTP error response."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(RelayError):
    """Malformed or missing request payload."""

    status_code = 400


class ConfigurationError(RelayError):
    """An upstream credential or setting is missing."""

    status_code = 500


class UpstreamError(RelayError):
    """A provider call failed (after the fallback hop, if any)."""

    status_code = 500

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider
