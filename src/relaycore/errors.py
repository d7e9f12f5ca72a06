"""relaycore exception hierarchy.

Every error carries ``user_message``, the text shown in place of a
failed assistant turn, and ``retryable``, a hint for the host.  The
orchestrator itself never retries.
"""


class RelayError(Exception):
    """Base exception for all relaycore errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable

    @property
    def user_message(self) -> str:
        return str(self)


class ConfigurationError(RelayError):
    """Missing or invalid configuration, detected before any network call."""


class ProviderError(RelayError):
    """A provider round failed."""


class InvalidCredentialError(ProviderError):
    """The provider rejected the credential (HTTP 401)."""

    def __init__(self, message: str = "Invalid API key. Check your settings.") -> None:
        super().__init__(message)


class RateLimitedError(ProviderError):
    """The provider is throttling requests (HTTP 429)."""

    def __init__(self, message: str = "Rate limited. Please wait a moment.") -> None:
        super().__init__(message, retryable=True)


class NetworkError(ProviderError):
    """Any other transport or HTTP failure."""

    def __init__(self, detail: str = "Unknown error") -> None:
        super().__init__(f"Network error: {detail}", retryable=True)
        self.detail = detail
