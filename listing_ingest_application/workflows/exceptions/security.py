from .base import NonRetryableWorkflowError


class SecurityRejectedError(NonRetryableWorkflowError):
    """Webhook secret or bearer credential missing or mismatched (HTTP 401)."""

    pass


class UnsolicitedCallbackError(NonRetryableWorkflowError):
    """Callback for a provider handle with no live registration."""

    def __init__(self, provider_handle: str) -> None:
        super().__init__(f"No webhook registration for snapshot {provider_handle}")
        self.provider_handle = provider_handle
