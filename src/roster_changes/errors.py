"""Exception hierarchy for change tracking operations."""


class ChangeTrackingError(Exception):
    """Base class for all change tracking errors."""

    pass


class ChangeValidationError(ChangeTrackingError):
    """Raised when configuration or input is malformed before any work begins."""

    pass


class ComparisonError(ChangeTrackingError):
    """Raised when a single entity cannot be compared (e.g. no identity field)."""

    def __init__(self, message: str, entity_id: str | None = None):
        super().__init__(message)
        self.entity_id = entity_id


class StorageError(ChangeTrackingError):
    """Raised when the change ledger cannot read or write records.

    Attributes:
        retryable: True when the caller may retry the same operation
                   (timeouts, cancellation, transient backend failures)
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class PlanningError(ChangeTrackingError):
    """Raised when an incremental sync plan cannot be ordered."""

    pass


class SessionStateError(ChangeTrackingError):
    """Raised when operating on an unknown or terminal tracking session."""

    def __init__(self, message: str, session_id: str | None = None):
        super().__init__(message)
        self.session_id = session_id
