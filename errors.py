"""
API error taxonomy.

Every failure leaves the service as one of the classes below and is rendered
as ``{"message": ..., "error": <code>}`` by the handlers registered in main.py.
"""
from fastapi import HTTPException


class ApiError(HTTPException):
    status_code = 500
    code = "error"

    def __init__(self, message: str):
        super().__init__(status_code=self.status_code, detail=message)
        self.message = message


class Unauthorized(ApiError):
    status_code = 401
    code = "unauthorized"


class InvalidToken(ApiError):
    status_code = 401
    code = "invalid_token"


class InvalidSignature(ApiError):
    status_code = 400
    code = "invalid_signature"


class Forbidden(ApiError):
    status_code = 403
    code = "forbidden"


class NotFound(ApiError):
    status_code = 404
    code = "not_found"


class Conflict(ApiError):
    status_code = 409
    code = "conflict"


class InvalidState(ApiError):
    status_code = 409
    code = "invalid_state"


class ValidationFailed(ApiError):
    status_code = 422
    code = "validation_error"


class DependencyFailure(ApiError):
    status_code = 500
    code = "dependency_failure"


class PaymentProviderFailure(DependencyFailure):
    status_code = 502
