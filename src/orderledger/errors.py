"""Custom exceptions for orderledger."""

from decimal import Decimal


class LedgerError(Exception):
    """Base exception for all orderledger errors."""

    pass


# --- Validation errors (user-correctable, surfaced verbatim) ---


class ValidationError(LedgerError):
    """Raised when input fails a business rule the caller can correct."""

    pass


class CertificateNotFoundError(ValidationError):
    """Raised when no certificate matches a code."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Gift certificate not found: {code}")


class InvalidOrderError(ValidationError):
    """Raised when order fields are malformed or break an order invariant."""

    def __init__(self, reason: str, order_id: str | None = None):
        self.reason = reason
        self.order_id = order_id
        msg = f"Invalid order: {reason}"
        if order_id:
            msg = f"Invalid order {order_id}: {reason}"
        super().__init__(msg)


class InvalidAmountError(ValidationError):
    """Raised when a money amount is negative or not a number."""

    def __init__(self, amount: object, reason: str | None = None):
        self.amount = amount
        msg = f"Invalid amount: {amount}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


# --- Conflict errors (caller should re-read and retry) ---


class ConflictError(LedgerError):
    """Raised when a write conflicts with the current state of a record."""

    pass


class ConflictingFinalizeError(ConflictError):
    """Raised when items or totals are changed on a finalized order."""

    def __init__(self, order_id: str, status: str, fields: list[str]):
        self.order_id = order_id
        self.status = status
        self.fields = fields
        super().__init__(
            f"Order {order_id} is {status}; cannot modify {', '.join(fields)}"
        )


class RevisionMismatchError(ConflictError):
    """Raised when a conditional write finds a newer revision than expected."""

    def __init__(self, key: str, expected: int, found: int):
        self.key = key
        self.expected = expected
        self.found = found
        super().__init__(
            f"Revision mismatch for {key}: expected {expected}, found {found}"
        )


class FieldMismatchError(ConflictError):
    """Raised when a compare-and-set finds a field holding another value."""

    def __init__(self, key: str, field: str, expected: object, found: object):
        self.key = key
        self.field = field
        self.expected = expected
        self.found = found
        super().__init__(
            f"Field {field} of {key} changed: expected {expected!r}, found {found!r}"
        )


class DocumentExistsError(ConflictError):
    """Raised when creating a document whose key is already taken."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Document already exists: {key}")


class OrderExistsError(DocumentExistsError):
    """Raised when creating an order whose ID is already taken."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"orders/{order_id}")


class CertificateExistsError(DocumentExistsError):
    """Raised when issuing a certificate whose code is already taken."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"certificates/{code}")


class BalanceConflictError(ConflictError):
    """Raised when a certificate balance changed under a compare-and-set."""

    def __init__(self, code: str, expected: Decimal, found: Decimal):
        self.code = code
        self.expected = expected
        self.found = found
        super().__init__(
            f"Balance of {code} changed: expected {expected}, found {found}"
        )


class OrderCancelledError(ConflictError):
    """Raised when settling a cancelled order."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} is cancelled and cannot be settled")


# --- Consistency errors (logged, reported as partial success) ---


class ConsistencyError(LedgerError):
    """Raised when stored state disagrees with an earlier allocation."""

    pass


class InsufficientBalanceError(ConsistencyError):
    """Raised when a certificate can no longer cover its applied amount."""

    def __init__(self, code: str, requested: Decimal, settled: Decimal):
        self.code = code
        self.requested = requested
        self.settled = settled
        self.shortfall = requested - settled
        super().__init__(
            f"Certificate {code} covered {settled} of {requested} "
            f"(shortfall {self.shortfall})"
        )


# --- Transient errors (retryable by the caller) ---


class TransientError(LedgerError):
    """Raised when an operation may succeed if retried."""

    pass


class StoreUnavailableError(TransientError):
    """Raised when the document store cannot be read or written."""

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Store unavailable during {operation}: {reason}")


# --- Lookup errors ---


class OrderNotFoundError(LedgerError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class DocumentNotFoundError(LedgerError):
    """Raised when a document key doesn't exist in the store."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Document not found: {key}")
