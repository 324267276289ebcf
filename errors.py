"""
Error kinds raised by the cart, coupon and order services.

Each error carries the HTTP status and a short ``kind`` tag so the web layer
can render ``{"detail": ..., "kind": ...}`` without knowing the service.
"""


class StoreError(Exception):
    status_code = 500
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    status_code = 422
    kind = "validation"


class NotFoundError(StoreError):
    status_code = 404
    kind = "not_found"


class ForbiddenError(StoreError):
    status_code = 403
    kind = "forbidden"


class ConflictError(StoreError):
    status_code = 409
    kind = "conflict"


class DependencyError(StoreError):
    status_code = 503
    kind = "dependency"
