"""Error taxonomy for contact reconciliation.

Every error carries the HTTP status and machine-readable code it is
rendered with. ``retryable`` errors make ``identify`` start over from the
resolve step inside a fresh transaction.
"""


class ReconciliationError(Exception):
    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ReconciliationError):
    """The request carried neither an email nor a phone number, or was unparseable."""

    status_code = 400
    code = "validation_error"


class StoreIntegrityError(ReconciliationError):
    """Stored links contradict the cluster invariants."""

    status_code = 500
    code = "store_integrity_error"


class ConflictError(ReconciliationError):
    """The transaction lost a race for the database lock."""

    status_code = 409
    code = "conflict"
    retryable = True


class NotFoundError(ReconciliationError):
    """A row disappeared between being read and being written."""

    status_code = 409
    code = "not_found"
    retryable = True
