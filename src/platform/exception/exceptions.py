class CustomBaseError(Exception):
    """Base class for all custom exceptions - controls logging behavior in @Logger.io"""

    def __init__(self, message: str, status_code: int = 500) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    @property
    def headers(self) -> dict[str, str]:
        return {}


class ValidationError(CustomBaseError):
    """Malformed or unknown references - rejected before any state change."""

    def __init__(self, message: str) -> None:
        super().__init__(message, 400)


class AuthenticationError(CustomBaseError):
    def __init__(self, message: str) -> None:
        super().__init__(message, 401)


class NotFoundError(CustomBaseError):
    def __init__(self, message: str) -> None:
        super().__init__(message, 404)


class SagaTimeoutError(CustomBaseError):
    """Saga deadline exceeded. Always resolved by compensation, never left pending."""

    def __init__(self, message: str) -> None:
        super().__init__(message, 408)


class ConflictError(CustomBaseError):
    """Seat unavailable, stale confirmation or optimistic version mismatch. Never auto-retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message, 409)


class StaleVersionError(ConflictError):
    """Row version moved between read and write."""


class RateLimitedError(CustomBaseError):
    def __init__(self, message: str, *, retry_after: float) -> None:
        super().__init__(message, 429)
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str]:
        return {'Retry-After': str(max(1, round(self.retry_after)))}


class TransientError(CustomBaseError):
    """Gateway timeout / dependency unavailable - retried with backoff up to a cap."""

    def __init__(self, message: str) -> None:
        super().__init__(message, 503)


class CircuitOpenError(TransientError):
    def __init__(self, message: str, *, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str]:
        return {'Retry-After': str(max(1, round(self.retry_after)))}


class LedgerUnavailableError(TransientError):
    """Idempotency store unreachable - callers fail closed and let the message be redelivered."""


class ServiceUnavailableError(CustomBaseError):
    def __init__(self, message: str) -> None:
        super().__init__(message, 503)


class LedgerBusyError(TransientError):
    """Another delivery holds a live lease on the same key - try again once it settles."""

    def __init__(self, message: str, *, retry_after: float) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str]:
        return {'Retry-After': str(max(1, round(self.retry_after)))}
