"""Persistence layer: database, ORM models and repositories."""

from .database import Database
from .models import Base, CoverQueueModel, GameModel, ensure_utc_aware, utc_now
from .repositories import GameRepository

__all__ = [
    "Base",
    "CoverQueueModel",
    "Database",
    "GameModel",
    "GameRepository",
    "ensure_utc_aware",
    "utc_now",
]
