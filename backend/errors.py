from typing import Optional


class ApiError(Exception):
    status_code = 500
    default_message = "An internal server error occurred."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class BadRequestError(ApiError):
    status_code = 400
    default_message = "Bad request."


class ForbiddenError(ApiError):
    status_code = 403
    default_message = "You need additional permissions to perform this action."


class NotFoundError(ApiError):
    status_code = 404
    default_message = "Resource not found."


class TooManyRequestsError(ApiError):
    status_code = 429
    default_message = "Too many requests, please try again later."

    def __init__(self, retry_after: int = 0, message: Optional[str] = None):
        super().__init__(message)
        self.retry_after = retry_after


class InvalidParameterError(BadRequestError):
    def __init__(self, name: str):
        super().__init__(f"Invalid {name}")
        self.parameter = name


class InvalidSortFieldError(InvalidParameterError):
    def __init__(self):
        super().__init__("sortField")


class InvalidSortOrderError(InvalidParameterError):
    def __init__(self):
        super().__init__("sortOrder")


class InvalidStatusError(InvalidParameterError):
    def __init__(self):
        super().__init__("status")


class SearchTooLongError(BadRequestError):
    default_message = "Search query is too long"


class SafeRegexError(BadRequestError):
    default_message = "Invalid search query"


class PatternTooLongError(SafeRegexError):
    default_message = "Search query is too long"


class PatternInvalidError(SafeRegexError):
    default_message = "Invalid search query"


class PatternTimeoutError(SafeRegexError):
    default_message = "Search query took too long"


class QueryTimeoutError(ApiError):
    status_code = 504
    default_message = "The request took too long to complete"
