from .batch import BatchDispatcher, create_batch_requests
from .core import Router
from .errors import BatchCancelledError, ConfigurationError, ProviderError, QuotaExhaustedError
from .selector import ModelSelector
from .tasks import TaskRunner
from .usage import UsageRecorder

__all__ = [
    "BatchDispatcher",
    "create_batch_requests",
    "Router",
    "ModelSelector",
    "UsageRecorder",
    "TaskRunner",
    "BatchCancelledError",
    "ConfigurationError",
    "ProviderError",
    "QuotaExhaustedError",
]
