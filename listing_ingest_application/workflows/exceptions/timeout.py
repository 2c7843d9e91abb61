from .base import NonRetryableWorkflowError


class TimedOutWorkflowError(NonRetryableWorkflowError):
    """Completion deadline passed or retry attempts exhausted before the snapshot became ready.

    Kept separate from ProviderFailedError so alerting can tell a slow provider
    apart from a job the provider marked as failed.
    """

    pass
