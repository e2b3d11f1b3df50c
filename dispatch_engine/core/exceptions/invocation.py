"""
Invocation Exceptions

Typed failures a transport raises for a single remote call. The engine only
ever looks at the failure class, never at transport-specific status codes.
"""

from dispatch_engine.core.config.constants import FailureClass
from dispatch_engine.core.exceptions.base import DispatchBaseError


class InvocationError(DispatchBaseError):
    """Base exception for remote invocation failures."""

    failure_class: FailureClass = FailureClass.FATAL


class ThrottledError(InvocationError):
    """
    Raised when the endpoint signals overload (HTTP 429, TooManyRequests, ...).

    Always retryable up to the configured maximum.
    """

    failure_class = FailureClass.THROTTLED


class TransientError(InvocationError):
    """
    Raised for network or timeout class failures.

    Presumed retryable.
    """

    failure_class = FailureClass.TRANSIENT


class FatalError(InvocationError):
    """
    Raised for permanent per-record failures (validation, bad payload).

    Never retried.
    """

    failure_class = FailureClass.FATAL
