from providers.base import ConfigurationError, ProviderError


class QuotaExhaustedError(Exception):
    """Every enabled model in the scope is out of minute or day quota."""

    status_code = 429


class BatchCancelledError(Exception):
    """A batch was cancelled before one of its waves started."""

    status_code = 499


__all__ = [
    "ConfigurationError",
    "ProviderError",
    "QuotaExhaustedError",
    "BatchCancelledError",
]
