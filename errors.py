from typing import Optional


class ServiceError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class UnauthenticatedError(ServiceError):
    code = "unauthenticated"
    status_code = 401


class NotFoundError(ServiceError):
    code = "not_found"
    status_code = 404


class InvalidInputError(ServiceError):
    code = "validation"
    status_code = 400


class RateLimitedError(ServiceError):
    """Token bucket exhausted; callers should back off for ``retry_after`` seconds."""

    code = "rate_limited"
    status_code = 429

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ConflictError(ServiceError):
    code = "conflict"
    status_code = 409


class UpstreamError(ServiceError):
    code = "upstream"
    status_code = 502
