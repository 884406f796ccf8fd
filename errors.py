"""Errors raised by the stock, sale and purchase ledgers.

Every error carries the HTTP status it is reported with, so the API layer can
turn any of them into a ``{"message": ...}`` response without a lookup table.
"""


class StationeryError(Exception):
    """Base class for application-specific errors."""

    status_code = 500

    def __init__(self, message: str = "An application error occurred", original_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.original_exception = original_exception

    def __str__(self) -> str:
        if self.original_exception:
            return f"{self.message} (Original error: {self.original_exception})"
        return self.message


class NotFound(StationeryError):
    """A referenced product, vendor, student, transaction or stock entry is absent."""

    status_code = 404


class InvalidRequest(StationeryError):
    """The request is malformed or cannot be satisfied."""

    status_code = 400


class InsufficientStock(InvalidRequest):
    def __init__(self, product_name: str, required: int, available: int, set_name: str | None = None) -> None:
        if set_name:
            message = f"Insufficient stock for {product_name} in set {set_name}. Required: {required}, Available: {available}"
        else:
            message = f"Insufficient stock for {product_name}. Available: {available}, Requested: {required}"
        super().__init__(message)
        self.product_name = product_name
        self.required = required
        self.available = available
        self.set_name = set_name


class InvalidConfiguration(InvalidRequest):
    """A set product has no components."""


class InvalidReference(InvalidRequest):
    """A set product points at a component that does not exist."""


class InternalFailure(StationeryError):
    """Unexpected persistence failure."""

    status_code = 500
