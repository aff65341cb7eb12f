"""
Domain errors raised by the inventory and invoice core.

None of these know about HTTP; main.py maps each class to a status code.
"""

from typing import Optional


class InventoryError(Exception):
    """Base class for failures that are reported back to the user."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(InventoryError):
    """A barcode, product, store or invoice lookup missed."""


class ValidationError(InventoryError):
    """Input or state check failed before anything was written."""


class ConflictError(InventoryError):
    """A concurrent writer won the race for the same document or unit."""


class PartialFailureError(InventoryError):
    """One write of a multi-document move succeeded and a dependent write did not."""

    def __init__(self, detail: str, cause: Optional[BaseException] = None,
                 compensation_error: Optional[BaseException] = None):
        super().__init__(detail)
        self.cause = cause
        self.compensation_error = compensation_error
