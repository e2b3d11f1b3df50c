from .logger import (
    clear_record_id,
    get_logger,
    get_record_id,
    log_stage,
    set_record_id,
    setup_logging,
)

__all__ = [
    "clear_record_id",
    "get_logger",
    "get_record_id",
    "log_stage",
    "set_record_id",
    "setup_logging",
]
