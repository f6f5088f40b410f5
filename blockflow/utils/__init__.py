from .retry import RetryPolicy, is_transient, retry_async, schedule_retry

__all__ = ["RetryPolicy", "is_transient", "retry_async", "schedule_retry"]
