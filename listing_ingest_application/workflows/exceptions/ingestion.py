from .base import NonRetryableWorkflowError, RetryableWorkflowError


class DecodeFailureError(NonRetryableWorkflowError):
    """Payload could not be decoded by any supported shape."""

    pass


class PersistenceFailureError(RetryableWorkflowError):
    """A relational write failed part way; the enrichment flag stays unset."""

    def __init__(self, message: str, *, identifier: str | None = None) -> None:
        super().__init__(message)
        self.identifier = identifier
