from .provider import ProviderUnavailableError


class RateLimitWorkflowError(ProviderUnavailableError):
    """Provider rate limit hit; safe to retry."""

    pass
