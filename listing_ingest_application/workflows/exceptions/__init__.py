from .base import WorkflowError, RetryableWorkflowError, NonRetryableWorkflowError
from .ingestion import DecodeFailureError, PersistenceFailureError
from .payment import PaymentRequiredWorkflowError
from .provider import (
    ProviderFailedError,
    ProviderRejectedError,
    ProviderUnavailableError,
    StillProcessingError,
)
from .rate_limit import RateLimitWorkflowError
from .security import SecurityRejectedError, UnsolicitedCallbackError
from .timeout import TimedOutWorkflowError

__all__ = [
    "WorkflowError",
    "RetryableWorkflowError",
    "NonRetryableWorkflowError",
    "ProviderRejectedError",
    "ProviderUnavailableError",
    "StillProcessingError",
    "ProviderFailedError",
    "PaymentRequiredWorkflowError",
    "RateLimitWorkflowError",
    "TimedOutWorkflowError",
    "DecodeFailureError",
    "PersistenceFailureError",
    "SecurityRejectedError",
    "UnsolicitedCallbackError",
]
