class MealdeskError(Exception):
    """Base class for failures that are reported to API callers as-is."""

    status_code = 500
    kind = "Internal Server Error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MealdeskError):
    status_code = 400
    kind = "Validation Error"


class AuthenticationError(MealdeskError):
    status_code = 401
    kind = "Authentication Error"


class AccessDeniedError(MealdeskError):
    status_code = 403
    kind = "Access Denied"


class NotFoundError(MealdeskError):
    status_code = 404
    kind = "Not Found"


class ConflictError(MealdeskError):
    status_code = 409
    kind = "Conflict"


class InsufficientBalanceError(MealdeskError):
    status_code = 402
    kind = "Insufficient Balance"


class RequestTimeoutError(MealdeskError):
    status_code = 504
    kind = "Timeout"
