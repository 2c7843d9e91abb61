from .base import NonRetryableWorkflowError, RetryableWorkflowError


class ProviderRejectedError(NonRetryableWorkflowError):
    """Provider answered 4xx; resubmitting the same input will not help."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderUnavailableError(RetryableWorkflowError):
    """Network failure or 5xx from the provider; safe to retry with backoff."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StillProcessingError(RetryableWorkflowError):
    """Snapshot is not ready yet. Raised on purpose so the retry policy polls again."""

    pass


class ProviderFailedError(NonRetryableWorkflowError):
    """The provider reported the snapshot itself as failed."""

    pass
