class PayHubError(Exception):
    """Base exception for the PayHub service."""

    pass


class AuthenticityError(PayHubError):
    """Raised when a webhook fails admission control.

    ``status_code`` is the HTTP status returned to the provider; ``reason`` is a
    stable machine-readable tag used in logs and the admission-failure audit.
    """

    def __init__(self, status_code: int, reason: str, message: str | None = None):
        self.status_code = status_code
        self.reason = reason
        super().__init__(message or reason)


class ProviderNotFound(PayHubError):
    """Raised when a route names a provider that is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown payment provider '{name}'")


class ProviderAPIError(PayHubError):
    """Raised when an outbound provider API call fails."""

    def __init__(self, provider: str, operation: str, status_code: int | None = None):
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        super().__init__(f"{provider} {operation} failed (status={status_code})")
