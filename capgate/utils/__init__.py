from .logging_setup import redact, setup_logging
from .retry import RetryPolicy, is_retryable_error, with_retry

__all__ = [
    "setup_logging",
    "redact",
    "RetryPolicy",
    "is_retryable_error",
    "with_retry",
]
