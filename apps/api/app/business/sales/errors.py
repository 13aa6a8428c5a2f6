from __future__ import annotations


class SalesError(Exception):
    """Base error for the sales document pipeline.

    Route handlers never build HTTP errors themselves; the application maps
    ``status_code`` and ``code`` onto the response.
    """

    status_code = 400
    code = "sales_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(SalesError):
    status_code = 404
    code = "not_found"


class ValidationError(SalesError):
    status_code = 400
    code = "validation_error"


class ConflictError(SalesError):
    status_code = 409
    code = "conflict"
