"""
Domain errors raised by the reconciliation core.

Routes never translate these by hand; ``ledgerbook.main`` registers one
exception handler per class.
"""


class LedgerbookError(Exception):
    """Base class for all domain errors"""
    status_code = 400

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LedgerbookError):
    """Malformed or out-of-range input, rejected before any computation."""
    status_code = 422


class AllocationError(LedgerbookError):
    """A payment allocation batch is invalid; nothing from it is applied."""
    status_code = 422


class NotFoundError(LedgerbookError):
    """Unknown numbering scope, document, payment, party or account."""
    status_code = 404


class ConcurrencyConflict(LedgerbookError):
    """A counter or balance changed between read and commit."""
    status_code = 409
