"""
Retry module.
Contains the pluggable retry policies used when a job fails.
"""

from jobqueue.retry.policy import (
    ExponentialRetryPolicy,
    ImmediateRetryPolicy,
    RetryPolicy,
)

__all__ = ["RetryPolicy", "ExponentialRetryPolicy", "ImmediateRetryPolicy"]
