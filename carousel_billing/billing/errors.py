class ConfigurationError(RuntimeError):
    """A required secret or credential is missing. Never degrade to the free plan on this."""


class EntitlementUnavailable(Exception):
    """The local store could not be read; the caller should retry rather than downgrade."""

    retryable = True


class ProviderUnavailable(Exception):
    """Stripe could not be reached or rejected the request."""
