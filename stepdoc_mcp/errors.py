from typing import Optional


class StepDocError(RuntimeError):
    """Base class for everything this package raises on purpose."""


class ApiError(StepDocError):
    """Non-2xx response from the StepDoc API."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"StepDoc API error ({status_code}): {message}")


class ProviderUnavailable(StepDocError):
    """The API did not report healthy within the readiness timeout."""


class SessionError(StepDocError):
    reason = "SessionError"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.reason
        super().__init__(self.message)


class NoRefreshToken(SessionError):
    reason = "NoRefreshToken"

    def __init__(self, message: str = "No refresh token stored; please sign in again."):
        super().__init__(message)


class RefreshFailed(SessionError):
    reason = "RefreshFailed"


class SessionExpired(SessionError):
    """A request was rejected and the session could not be refreshed.

    Callers should send the user back to ``redirect_to``.
    """

    reason = "SessionExpired"

    def __init__(self, message: str = "Session expired; please sign in again.", redirect_to: Optional[str] = None):
        self.redirect_to = redirect_to
        super().__init__(message)
