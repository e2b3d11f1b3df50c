"""
Admission Exceptions

All exceptions related to acquiring admission tokens.
"""

from dispatch_engine.core.exceptions.base import DispatchBaseError


class AdmissionError(DispatchBaseError):
    """Base exception for admission limiter errors."""
    pass


class AdmissionBackendError(AdmissionError):
    """
    Raised when the shared admission state cannot be read or updated.

    Common causes:
    - Redis unavailable
    - Script evaluation failure
    """
    pass
