"""
Core Module

Foundational components: configuration, logging, exceptions, resilience
and observability.
"""

from .exceptions import (
    CircuitHaltedError,
    ConfigurationError,
    DataServiceError,
    QuerySyncError,
)
from .logging import (
    clear_scope_id,
    get_logger,
    get_scope_id,
    log_stage,
    set_scope_id,
    setup_logging,
)
