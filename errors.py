# errors.py
"""Error kinds surfaced by the API."""


class InvoiceAppError(Exception):
    """Base class; carries the HTTP status the API reports it with."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(InvoiceAppError):
    """Requested record does not exist (or belongs to another user)."""

    status_code = 404


class ConflictError(InvoiceAppError):
    """Write would break a uniqueness or reference constraint."""

    status_code = 409


class BadRequestError(InvoiceAppError):
    """Request body or query string cannot be used as given."""

    status_code = 400
