from __future__ import annotations


class MarketplaceError(RuntimeError):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    status_code = 400


class InvalidRange(ValidationError):
    pass


class Unauthorized(MarketplaceError):
    status_code = 401


class Forbidden(MarketplaceError):
    status_code = 403


class NotFound(MarketplaceError):
    status_code = 404


class Conflict(MarketplaceError):
    status_code = 409


class InvalidTransition(Conflict):
    pass


class RateLimited(MarketplaceError):
    status_code = 429

    def __init__(self, message: str, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class InternalError(MarketplaceError):
    status_code = 500


class ServiceUnavailable(InternalError):
    status_code = 503
