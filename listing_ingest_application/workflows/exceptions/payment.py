from .provider import ProviderRejectedError


class PaymentRequiredWorkflowError(ProviderRejectedError):
    """Provider returned 402 / insufficient balance."""

    pass
