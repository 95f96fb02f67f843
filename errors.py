"""
Application errors

Each error carries the HTTP status it maps to and a public detail message.
Internal causes are logged where they happen and never placed in `detail`.
"""


class AppError(Exception):
    status_code = 500
    default_detail = "Internal error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(AppError):
    status_code = 400
    default_detail = "Invalid request"


class AuthenticationError(AppError):
    status_code = 401
    default_detail = "Could not validate credentials"


class AuthorizationError(AppError):
    status_code = 403
    default_detail = "Not allowed"


class NotFoundError(AppError):
    status_code = 404
    default_detail = "Not found"


class ConflictError(AppError):
    status_code = 409
    default_detail = "Conflict"


class UpstreamError(AppError):
    status_code = 503
    default_detail = "Service temporarily unavailable"
