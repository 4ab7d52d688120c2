"""
Logging Module

structlog configuration and helpers.
"""

from .logger import (
    clear_scope_id,
    get_logger,
    get_scope_id,
    log_stage,
    set_scope_id,
    setup_logging,
)

__all__ = [
    "clear_scope_id",
    "get_logger",
    "get_scope_id",
    "log_stage",
    "set_scope_id",
    "setup_logging",
]
