"""Cover services: reconciliation and URL helpers."""

from .helpers import needs_cover_processing, resolve_cover_url
from .reconciliation import CoverReconciliationService, ReconciliationReport

__all__ = [
    "CoverReconciliationService",
    "ReconciliationReport",
    "needs_cover_processing",
    "resolve_cover_url",
]
