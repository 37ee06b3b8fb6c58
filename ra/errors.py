# ra/errors.py


class RAError(Exception):
    """Base class of every error raised by the engine and its collaborators."""

    code = "RA_ERROR"
    status_code = 500
    retryable = False
    client_error = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message, "retryable": self.retryable}}


class InvalidCSR(RAError):
    code = "INVALID_CSR"
    status_code = 400
    client_error = True


class InvalidStatusFilter(RAError):
    code = "INVALID_STATUS_FILTER"
    status_code = 400
    client_error = True


class IdentityMismatch(RAError):
    code = "IDENTITY_MISMATCH"
    status_code = 422
    client_error = True


class NotFound(RAError):
    code = "NOT_FOUND"
    status_code = 404
    client_error = True


class InvalidTransition(RAError):
    code = "INVALID_TRANSITION"
    status_code = 409
    client_error = True


class StorageUnavailable(RAError):
    code = "STORAGE_UNAVAILABLE"
    status_code = 503
    retryable = True


class CAError(RAError):
    """Raised by CA gateways on sign, fetch or revoke failure."""


class CATransient(CAError):
    code = "CA_TRANSIENT"
    status_code = 503
    retryable = True


class CARejected(CAError):
    code = "CA_REJECTED"
    status_code = 502


class OperationCancelled(RAError):
    code = "CANCELLED"
    status_code = 504
    retryable = True
