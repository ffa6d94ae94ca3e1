"""
Application error taxonomy.

Every error raised on purpose carries an HTTP status, a stable machine-readable
code and a retryable flag; the handlers in ``main.py`` turn them into the JSON
error envelope.
"""

from typing import Any, Dict, List, Optional


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False
    is_operational = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        is_operational: Optional[bool] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        if is_operational is not None:
            self.is_operational = is_operational
        self.errors = errors


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class InsufficientCreditsError(AppError):
    status_code = 402
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, message: str = "Insufficient credits", credits_needed: int = 1):
        super().__init__(message)
        self.credits_needed = credits_needed


class InvalidInputError(AppError):
    status_code = 400
    code = "INVALID_INPUT"


class InvalidAmountError(InvalidInputError):
    code = "INVALID_AMOUNT"

    def __init__(self, message: str = "Credits must be positive"):
        super().__init__(message)


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class AuthError(AppError):
    status_code = 401
    code = "AUTH_ERROR"


class RateLimitExceededError(AppError):
    status_code = 429
    code = "RATE_LIMITED"
    retryable = True

    def __init__(self, message: str, retry_after: int, headers: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.retry_after = retry_after
        self.headers = headers or {}


class RequestTimeoutError(AppError):
    status_code = 504
    code = "REQUEST_TIMEOUT"
    retryable = True


class InternalError(AppError):
    status_code = 500
    code = "INTERNAL_ERROR"
    is_operational = False


# AI service failures. The generation protocol treats all of them the same way
# (compensate and re-raise); the distinction only matters to the client.


class AIServiceError(AppError):
    status_code = 503
    code = "AI_SERVICE_ERROR"
    retryable = True

    def __init__(self, message: str = "AI service is currently unavailable. Please try again later."):
        super().__init__(message)


class AIQuotaExceededError(AIServiceError):
    status_code = 503
    code = "AI_QUOTA_EXCEEDED"
    retryable = True

    def __init__(self, message: str = "AI service quota exceeded. Please try again later."):
        super().__init__(message)


class AIRateLimitedError(AIServiceError):
    status_code = 429
    code = "AI_RATE_LIMITED"
    retryable = True

    def __init__(self, message: str = "AI service rate limit exceeded. Please try again in a moment."):
        super().__init__(message)


class ContentTooLongError(AIServiceError):
    status_code = 413
    code = "CONTENT_TOO_LONG"
    retryable = False

    def __init__(self, message: str = "Content too long for AI processing. Please try with shorter content."):
        super().__init__(message)


class AIInvalidRequestError(AIServiceError):
    status_code = 400
    code = "AI_INVALID_REQUEST"
    retryable = False

    def __init__(self, message: str = "Invalid request to AI service"):
        super().__init__(message)


class AIResponseError(AIServiceError):
    status_code = 502
    code = "AI_INVALID_RESPONSE"
    retryable = False

    def __init__(self, message: str = "Invalid response format from AI"):
        super().__init__(message)


class AIServiceUnavailableError(AIServiceError):
    """Generic service failure (network, 5xx, unconfigured client)."""


def retry_after_for(status_code: int) -> int:
    """Seconds a client should wait before retrying a retryable error."""
    if status_code == 429:
        return 60
    if status_code == 503:
        return 30
    if status_code == 504:
        return 10
    return 5
