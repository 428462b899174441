class RateLimited(Exception):
    """Operation was rate limited by provider. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int = 1000, message: str = "Rate limited", status: int = 429) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms
        self.status = status


class TemporaryFailure(Exception):
    """Transient provider or network failure (5xx, timeouts). Retrying may succeed."""

    def __init__(self, message: str = "Temporary failure", status: int = None, payload=None) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload


class AuthorizationExpired(Exception):
    """Access credential was rejected as expired. Recoverable by a single refresh."""


class PermanentFailure(Exception):
    """Non-retriable failure due to invalid input or authorization issues."""

    def __init__(self, message: str = "Permanent failure", status: int = None, payload=None) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload


class NotFound(Exception):
    """Requested resource (or endpoint for that resource) was not found."""

    def __init__(self, message: str = "Not found", status: int = 404, payload=None) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload


class ConfigurationError(Exception):
    """A required credential or parameter is missing. Never retried."""


class SyncInProgress(Exception):
    """Another sync run holds the global sync lock."""
