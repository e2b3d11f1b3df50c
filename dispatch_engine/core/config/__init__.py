"""
Configuration Module

Components:
-----------
- **constants.py**: Enums, defaults and stage identifiers
- **settings.py**: Pydantic-based configuration with environment variable loading
- **dispatch_config.py**: Immutable, validated runtime configuration
"""

from dispatch_engine.core.config.constants import (
    AdmissionBackend,
    AttemptOutcome,
    FailureClass,
    Stage,
    TerminalStatus,
)
from dispatch_engine.core.config.settings import Settings, get_settings, reload_settings
from dispatch_engine.core.config.dispatch_config import DispatchConfig

__all__ = [
    "AdmissionBackend",
    "AttemptOutcome",
    "DispatchConfig",
    "FailureClass",
    "Settings",
    "Stage",
    "TerminalStatus",
    "get_settings",
    "reload_settings",
]
