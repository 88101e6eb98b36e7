"""Error taxonomy for the analytics core.

Every error carries an HTTP status so the API layer can translate it without
knowing which component raised it.
"""

from fastapi import status


class PulseError(Exception):
    """Base class for all errors raised by the analytics core."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str = "Internal error"):
        super().__init__(detail)
        self.detail = detail


class ValidationError(PulseError):
    """Malformed or incomplete input, rejected before any state mutation."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str = "Invalid input", fields: list[str] | None = None):
        super().__init__(detail)
        self.fields = fields or []

    @classmethod
    def missing(cls, fields: list[str]) -> "ValidationError":
        noun = "field" if len(fields) == 1 else "fields"
        return cls(f"Missing required {noun}: {', '.join(fields)}", fields=fields)


class TransientStoreError(PulseError):
    """Durable store unavailable. The caller should retry with backoff."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retry_after_seconds = 5

    def __init__(self, detail: str = "Event store unavailable, retry later"):
        super().__init__(detail)


class CapacityError(PulseError):
    """A bounded structure reached its hard limit.

    Never surfaces to callers: the owner catches it and evicts per policy.
    """

    status_code = status.HTTP_507_INSUFFICIENT_STORAGE


class StateConflictError(PulseError):
    """Concurrent update observed where single-writer discipline should hold."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class NotFoundError(PulseError):
    """Requested resource does not exist."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, detail: str = "Not found"):
        super().__init__(detail)


class ServiceUnavailableError(PulseError):
    """Dependency not ready (used by readiness probes)."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, detail: str = "Service unavailable"):
        super().__init__(detail)
