"""Domain exceptions."""

from enum import Enum
from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, we store message as an attribute so code can inspect it without
    # parsing str(exception). Don't raise this directly - use a specific subclass so
    # callers can catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class EntityNotFoundException(DomainException):
    """Raised when an entity is not found."""

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConfigurationError(DomainException):
    """Raised when required configuration is missing or invalid."""

    pass


class StaleCoverError(DomainException):
    """Raised when a stored cover is for an image the entry no longer points at."""

    def __init__(self, game_id: str, remote_image_id: str) -> None:
        super().__init__(
            f"Game {game_id} no longer uses cover image {remote_image_id}"
        )
        self.game_id = game_id
        self.remote_image_id = remote_image_id


class MetadataSourceError(DomainException):
    """Raised when the metadata source (IGDB) rejects or fails a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# =============================================================================
# COVER PIPELINE ERRORS
# =============================================================================
# Hey future me - this is a CLOSED set! Every step of the cover pipeline wraps
# whatever blew up into exactly one of these four kinds. The worker catches
# CoverPipelineError at ONE boundary and routes it into mark_failed() with
# describe() as lastError. If you add a pipeline step, pick a kind, don't add
# a fifth one unless the retry router learns about it too.
# =============================================================================


class ErrorKind(Enum):
    """Failure categories of the cover pipeline."""

    DOWNLOAD = "download"
    TRANSFORM = "transform"
    STORAGE = "storage"
    CATALOG_UPDATE = "catalog_update"


class CoverPipelineError(DomainException):
    """Base class for per-item cover pipeline failures."""

    kind: ErrorKind

    def describe(self) -> str:
        """Render as "<kind>: <message>" for the queue item's lastError."""
        return f"{self.kind.value}: {self.message}"


class DownloadError(CoverPipelineError):
    """Network error, timeout or non-success status while fetching the image."""

    kind = ErrorKind.DOWNLOAD

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransformError(CoverPipelineError):
    """Corrupt or unsupported image bytes."""

    kind = ErrorKind.TRANSFORM


class StorageError(CoverPipelineError):
    """Asset store write failure."""

    kind = ErrorKind.STORAGE


class CatalogUpdateError(CoverPipelineError):
    """Catalog entry missing or could not be updated."""

    kind = ErrorKind.CATALOG_UPDATE


__all__ = [
    "CatalogUpdateError",
    "ConfigurationError",
    "CoverPipelineError",
    "DomainException",
    "DownloadError",
    "EntityNotFoundException",
    "ErrorKind",
    "MetadataSourceError",
    "StorageError",
    "TransformError",
]
