from typing import Any, Optional


class RequestFailedError(Exception):
    """Raised when a service call fails or a long-running operation ends in failure.

    Attributes:
        message: Human-readable error description.
        status: HTTP status code of the response, 0 when unknown.
        error_code: Service error code pulled from the response body, if any.
        response: The raw response the error was built from.
    """

    def __init__(
        self,
        message: str,
        *,
        status: int = 0,
        error_code: Optional[str] = None,
        response: Any = None,
    ):
        self.message = message
        self.status = status
        self.error_code = error_code
        self.response = response
        super().__init__(message)
