"""
Domain exceptions for the Orders service.

Every exception carries the HTTP status it maps to; the API layer renders
them into the ``{"success": false, "error": ...}`` envelope.
"""


class OrderEngineError(Exception):
    """Base class for all domain errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(OrderEngineError):
    """Malformed or missing input, rejected before any write."""

    status_code = 400


class SignatureError(OrderEngineError):
    """Payment notification failed signature verification."""

    status_code = 400


class NotFoundError(OrderEngineError):
    status_code = 404


class ConflictError(OrderEngineError):
    """The request is well formed but the current state forbids it."""

    status_code = 400


class ConcurrencyError(OrderEngineError):
    """A concurrent writer changed the record between read and write."""

    status_code = 409


class InternalError(OrderEngineError):
    status_code = 500
