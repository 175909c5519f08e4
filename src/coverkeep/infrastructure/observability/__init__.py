"""Logging and correlation ids."""

from .logging import (
    CorrelationIdFilter,
    configure_logging,
    get_correlation_id,
    set_correlation_id,
)

__all__ = [
    "CorrelationIdFilter",
    "configure_logging",
    "get_correlation_id",
    "set_correlation_id",
]
