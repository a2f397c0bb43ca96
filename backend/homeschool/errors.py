"""Service-level exceptions.

Services raise these instead of `HTTPException` so they stay usable from
scripts and tests; `main.py` maps them to JSON responses using
`status_code`.
"""


class ServiceError(Exception):
    status_code = 400

    def __init__(self, message: str, extra: dict | None = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}


class ValidationError(ServiceError, ValueError):
    status_code = 400


class ForbiddenError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class PaymentRequiredError(ServiceError):
    status_code = 402


class ServiceUnavailableError(ServiceError):
    status_code = 503
