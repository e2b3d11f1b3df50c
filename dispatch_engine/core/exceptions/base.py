"""
Base Exception Class

This module contains ONLY the base exception class that all other exceptions inherit from.
All specialized exceptions are in their respective themed modules.
"""

from typing import Any


class DispatchBaseError(Exception):
    """
    Base exception for all record-dispatch errors.

    All custom exceptions inherit from this class to enable:
    - Consistent error handling
    - Record ID correlation
    - Structured error logging

    Attributes:
        message: Error message
        record_id: Record ID for correlation (if available)
        details: Additional error details (dict)

    Example:
        raise TransientError(
            "Endpoint timed out",
            record_id="orders.jsonl:42",
            details={"timeout_seconds": 30}
        )
    """

    def __init__(
        self, message: str, record_id: str | None = None, details: dict[str, Any] | None = None
    ):
        self.message = message
        self.record_id = record_id
        self.details = (details or {}).copy()
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging and summaries.

        Returns:
            Dict with error_type, message, record_id, and details
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "record_id": self.record_id,
            "details": self.details,
        }

    def with_context(self, **context) -> "DispatchBaseError":
        """
        Add additional context to the error details.

        Returns:
            Self (for method chaining)
        """
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        details_str = f", details={self.details}" if self.details else ""
        record_id_str = f", record_id='{self.record_id}'" if self.record_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{record_id_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        record_id: str | None = None,
        **details
    ) -> "DispatchBaseError":
        """
        Create an error of this class from another exception.

        Useful for wrapping third-party exceptions (httpx, redis) with additional context.

        Example:
            >>> try:
            ...     await client.post(url, content=payload)
            ... except httpx.ConnectError as e:
            ...     raise TransientError.from_exception(e, record_id="r-1", url=url)
        """
        error_message = message or str(exc)
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details
        }
        return cls(error_message, record_id=record_id, details=error_details)


class ConfigurationError(DispatchBaseError):
    """Raised when limiter, retry or buffer configuration is invalid."""
    pass
