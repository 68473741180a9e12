class LedgerError(Exception):
    retryable = False


class ValidationError(LedgerError, ValueError):
    pass


class NotFoundError(LedgerError, ValueError):
    pass


class ConflictError(LedgerError):
    """Lock contention or a concurrent write of the same key; nothing was applied."""

    retryable = True


class StorageError(LedgerError):
    """The persistence layer could not be reached; the unit of work was rolled back."""

    retryable = True
