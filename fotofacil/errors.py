"""Error taxonomy shared by the storage, payment and delivery layers.

Every error carries the HTTP status it maps to, a stable reason code the client
can switch on, and a message safe to show to the customer.
"""


class FotoFacilError(Exception):
    status_code = 500
    reason_code = "INTERNAL_ERROR"

    def __init__(self, message: str, reason_code: str | None = None):
        super().__init__(message)
        self.message = message
        if reason_code is not None:
            self.reason_code = reason_code

    def __str__(self) -> str:
        return f"{self.reason_code}: {self.message}"


class ConfigurationError(FotoFacilError):
    reason_code = "CONFIGURATION_ERROR"


class ValidationError(FotoFacilError):
    status_code = 400
    reason_code = "INVALID_REQUEST"


class NotFoundError(FotoFacilError):
    status_code = 404
    reason_code = "NOT_FOUND"


class ForbiddenError(FotoFacilError):
    status_code = 403
    reason_code = "FORBIDDEN"


class RateLimitedError(FotoFacilError):
    status_code = 429
    reason_code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class ConcurrentUpdateError(FotoFacilError):
    status_code = 409
    reason_code = "CONCURRENT_UPDATE"


class UpstreamError(FotoFacilError):
    status_code = 502
    reason_code = "UPSTREAM_ERROR"


class TokenExchangeError(UpstreamError):
    reason_code = "TOKEN_EXCHANGE_FAILED"


class StorageError(UpstreamError):
    reason_code = "STORAGE_ERROR"


class GatewayError(UpstreamError):
    reason_code = "GATEWAY_ERROR"


class SigningError(FotoFacilError):
    reason_code = "SIGNING_FAILED"


class WatermarkError(FotoFacilError):
    reason_code = "WATERMARK_FAILED"


class WatermarkUnavailableError(WatermarkError):
    reason_code = "WATERMARK_UNAVAILABLE"
