"""API error classes.

HTTP status codes and error codes for the generation and credit endpoints.

Every subclass is rendered by ``api_error_handler`` as
``{"error": {"code", "message", "details"}}`` with its status code.
"""

from decimal import Decimal


class APIError(Exception):
    """Base class for API errors.

    All API errors have a code, message, and HTTP status.
    Subclasses set default status_code.

    Attributes:
        code: Machine-readable error code (e.g., "NOT_FOUND").
        message: Human-readable error message.
        status_code: HTTP status code to return.
        details: Optional list of additional error details.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: list[dict] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(APIError):
    """Field validation failed (400).

    Use for request body validation errors, query param errors, etc.
    """

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=400,
            details=details,
        )


class FanOutLimitError(ValidationError):
    """More models requested than one submission may fan out to (400)."""

    def __init__(self, requested: int, limit: int) -> None:
        super().__init__(
            message=f"At most {limit} models per request, got {requested}",
            details=[{"field": "models", "requested": requested, "limit": limit}],
        )


class UnauthorizedError(APIError):
    """Authentication required (401)."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(
            code="UNAUTHORIZED",
            message=message,
            status_code=401,
        )


class NotFoundError(APIError):
    """Resource not found (404).

    Use when requested resource doesn't exist OR doesn't belong to user.
    Revealing "exists but not yours" leaks information, so both cases
    share this error.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
        )


class InvalidStateError(APIError):
    """Business rule violation (422).

    Use when request is syntactically valid but violates business rules.
    E.g., trying to cancel an image generation.
    """

    def __init__(self, message: str) -> None:
        super().__init__(
            code="INVALID_STATE_TRANSITION",
            message=message,
            status_code=422,
        )


class ModelUnavailableError(APIError):
    """Requested model is unknown, disabled, or of the wrong type (422).

    Args:
        model_id: Catalog identifier that was requested.
        reason: Short explanation shown to the caller.
    """

    def __init__(self, model_id: str, reason: str) -> None:
        super().__init__(
            code="MODEL_UNAVAILABLE",
            message=f"Model '{model_id}' {reason}",
            status_code=422,
        )


class InsufficientCreditsError(APIError):
    """Insufficient credits to start a generation (402).

    Raised on the streaming path, where the reservation happens before the
    response starts. Fan-out units record the failure on the unit instead.

    Args:
        available: Credits available on the resolved source.
        required: Credits the reservation needed.
    """

    def __init__(self, available: Decimal, required: Decimal) -> None:
        super().__init__(
            code="INSUFFICIENT_CREDITS",
            message="Not enough credits for this generation. Please add credits to continue.",
            status_code=402,
            details=[
                {
                    "available": f"{available:.8f}",
                    "required": f"{required:.8f}",
                }
            ],
        )


class ConfigurationError(APIError):
    """Server-side configuration is unusable (500).

    Raised for a non-positive credit price or a catalog model that maps to
    no adapter. The client sees a generic message; ``detail`` is for logs.

    Args:
        detail: What is misconfigured (logged, never returned).
    """

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(
            code="CONFIGURATION_ERROR",
            message="The service is misconfigured. Please try again later.",
            status_code=500,
        )

    def __str__(self) -> str:
        return self.detail

