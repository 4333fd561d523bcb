# Overview: Typed error taxonomy for ledger operations and its HTTP mapping.

"""
Ledger Error Taxonomy

Every failure raised by the ledger services is a LedgerError subclass.
Routes translate them to JSON with `error_response`; nothing else in the
stack needs to know HTTP status codes.

KINDS:
- ValidationError (400): malformed input, insufficient payment, bad allocations
- NotFound (404): unknown receipt/period/report
- StateConflict (409): illegal state transition (already open/closed/generated,
  mutation of terminal receipts)
- AuthorizationDenied (403): role or ownership check failed
- ConcurrencyConflict (409, retryable): optimistic lock lost or period busy
- ResourceUnavailable (503): collaborator (inventory, printer, gateway) down
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger failures."""
    http_status = 500
    code = "LEDGER_ERROR"
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            payload["details"] = self.details
        if self.retryable:
            payload["retryable"] = True
        return payload


class ValidationError(LedgerError):
    """400-level input problem."""
    http_status = 400
    code = "VALIDATION_ERROR"


class InsufficientPayment(ValidationError):
    code = "INSUFFICIENT_PAYMENT"


class InvalidAllocation(ValidationError):
    code = "INVALID_ALLOCATION"


class NotFound(LedgerError):
    http_status = 404
    code = "NOT_FOUND"


class StateConflict(LedgerError):
    """409-level business rule conflict."""
    http_status = 409
    code = "STATE_CONFLICT"


class InvalidState(StateConflict):
    code = "INVALID_STATE"


class AlreadyOpen(StateConflict):
    code = "ALREADY_OPEN"


class AlreadyClosed(StateConflict):
    code = "ALREADY_CLOSED"


class AlreadyGenerated(StateConflict):
    code = "ALREADY_GENERATED"


class UnsettledReceipts(StateConflict):
    code = "UNSETTLED_RECEIPTS"


class AuthorizationDenied(LedgerError):
    http_status = 403
    code = "AUTHORIZATION_DENIED"


class ConcurrencyConflict(LedgerError):
    http_status = 409
    code = "CONCURRENCY_CONFLICT"
    retryable = True


class PeriodBusy(ConcurrencyConflict):
    code = "PERIOD_BUSY"


class ResourceUnavailable(LedgerError):
    http_status = 503
    code = "RESOURCE_UNAVAILABLE"
    retryable = True
