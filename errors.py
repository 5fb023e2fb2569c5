"""
Error taxonomy shared by the request handlers and the messaging layer.

Handlers raise these instead of HTTPException so the messaging functions stay
usable outside a request. main.py maps them to ``{"detail": ...}`` responses.
"""


class AppError(Exception):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail=None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class Unauthenticated(AppError):
    status_code = 401
    default_detail = "Not authenticated"


class Forbidden(AppError):
    status_code = 403
    default_detail = "Forbidden"


class NotFound(AppError):
    status_code = 404
    default_detail = "Not found"


class ValidationError(AppError):
    status_code = 400
    default_detail = "Invalid request"


class ServerError(AppError):
    status_code = 500
