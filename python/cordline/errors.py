"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Authorization errors (403)
    # Non-participants always get E_FORBIDDEN so conversation existence is not leaked.
    E_FORBIDDEN = "E_FORBIDDEN"
    E_INTERNAL_ONLY = "E_INTERNAL_ONLY"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_CONVERSATION_NOT_FOUND = "E_CONVERSATION_NOT_FOUND"
    E_MESSAGE_NOT_FOUND = "E_MESSAGE_NOT_FOUND"
    E_USER_NOT_FOUND = "E_USER_NOT_FOUND"
    E_CORD_NOT_FOUND = "E_CORD_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_CURSOR = "E_INVALID_CURSOR"
    E_SELF_CONVERSATION = "E_SELF_CONVERSATION"
    E_MESSAGE_EMPTY = "E_MESSAGE_EMPTY"
    E_MESSAGE_TOO_LONG = "E_MESSAGE_TOO_LONG"
    E_CONTENT_FLAGGED = "E_CONTENT_FLAGGED"
    E_INVALID_STATUS = "E_INVALID_STATUS"
    E_INVALID_TIMER = "E_INVALID_TIMER"

    # Server errors
    E_AUTH_UNAVAILABLE = "E_AUTH_UNAVAILABLE"  # 503
    E_FANOUT_UNAVAILABLE = "E_FANOUT_UNAVAILABLE"  # 503
    E_INTERNAL = "E_INTERNAL"  # 500


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_INTERNAL_ONLY: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_CONVERSATION_NOT_FOUND: 404,
    ApiErrorCode.E_MESSAGE_NOT_FOUND: 404,
    ApiErrorCode.E_USER_NOT_FOUND: 404,
    ApiErrorCode.E_CORD_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_INVALID_CURSOR: 400,
    ApiErrorCode.E_SELF_CONVERSATION: 400,
    ApiErrorCode.E_MESSAGE_EMPTY: 400,
    ApiErrorCode.E_MESSAGE_TOO_LONG: 400,
    ApiErrorCode.E_CONTENT_FLAGGED: 400,
    ApiErrorCode.E_INVALID_STATUS: 400,
    ApiErrorCode.E_INVALID_TIMER: 400,
    ApiErrorCode.E_AUTH_UNAVAILABLE: 503,
    ApiErrorCode.E_FANOUT_UNAVAILABLE: 503,
    ApiErrorCode.E_INTERNAL: 500,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    """Authorization failure error.

    Raised when the viewer is not a participant of the conversation they act on.
    """

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_FORBIDDEN, message: str = "Forbidden"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)
