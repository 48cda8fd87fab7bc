"""Custom exceptions for the payment ledger."""


class LedgerError(Exception):
    """Base exception for all ledger errors."""
    retryable = False

    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        rv['error'] = type(self).__name__
        if self.retryable:
            rv['retryable'] = True
        return rv


class ValidationError(LedgerError):
    """Raised for invalid input: bad amount, missing attribution, unknown invoice."""
    def __init__(self, message, payload=None):
        super().__init__(message, 400, payload)


class OverpaymentError(LedgerError):
    """Raised when a payment exceeds the invoice outstanding or the invoice is fully paid."""
    def __init__(self, message, outstanding=None, payload=None):
        payload = dict(payload or ())
        if outstanding is not None:
            payload['outstanding'] = str(outstanding)
        super().__init__(message, 400, payload)
        self.outstanding = outstanding


class DuplicateSubmissionError(LedgerError):
    """Raised when the same payment looks like it was just submitted."""
    def __init__(self, message, payload=None):
        super().__init__(message, 409, payload)


class IdempotencyKeyConflict(DuplicateSubmissionError):
    """Raised inside a transaction when another writer already owns the idempotency key."""
    def __init__(self, idempotency_key):
        super().__init__(
            f'Idempotency key {idempotency_key} was recorded by a concurrent request',
            payload={'idempotency_key': idempotency_key}
        )
        self.idempotency_key = idempotency_key


class ConcurrencyConflictError(LedgerError):
    """Raised when a row was modified by another transaction; safe to retry."""
    retryable = True

    def __init__(self, message="Record was modified by another user. Please refresh and try again.", payload=None):
        super().__init__(message, 409, payload)


class NotFoundError(LedgerError):
    """Raised when a payment, invoice or customer is absent or outside the tenant."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class PersistenceError(LedgerError):
    """Raised when a transaction fails for reasons other than the above."""
    def __init__(self, message="The operation could not be saved. Please try again later.", payload=None):
        super().__init__(message, 500, payload)
