"""Domain ports (interfaces) for dependency inversion."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from coverkeep.domain.entities import GameMetadata, StoredAsset


# Hey future me, IAssetStore is where finished WebP covers live! Exactly ONE backend is
# active at a time (local disk or S3/B2). owns_url() + key_from_url() let reconciliation
# decide if a stored pointer belongs to the active backend at all - a pointer from the
# other backend counts as missing, that's how a backend switch re-fetches everything.
class IAssetStore(ABC):
    """Port for the durable asset store holding processed cover images."""

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Short backend name ("local", "s3")."""

    @abstractmethod
    async def write(self, data: bytes, meta: dict[str, Any]) -> StoredAsset:
        """Persist bytes and return the stored asset (id + public URL)."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check whether an object with this key exists."""

    @abstractmethod
    def owns_url(self, url: str) -> bool:
        """True if the URL has this backend's shape."""

    @abstractmethod
    def key_from_url(self, url: str) -> str | None:
        """Extract the storage key from one of this backend's URLs."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete an object. Returns False if it didn't exist.

        The worker uses it to drop a freshly written cover the catalog refused.
        Also part of the store API for catalog tooling that removes games.
        """


class IMetadataSource(ABC):
    """Port for the external game metadata source (IGDB)."""

    @property
    @abstractmethod
    def max_batch_size(self) -> int:
        """Largest id list fetch_by_ids() sends in one request."""

    @abstractmethod
    async def fetch_by_id(self, remote_id: int) -> GameMetadata | None:
        """Fetch one game record, None if the source doesn't know it."""

    @abstractmethod
    async def fetch_by_ids(self, remote_ids: Sequence[int]) -> list[GameMetadata]:
        """Fetch several game records. Unknown ids are simply absent from the result."""

    @abstractmethod
    def cover_url(self, image_id: str, size_variant: str) -> str | None:
        """Build the remote image URL for a cover image id."""


class IImageTransformer(ABC):
    """Port for turning downloaded image bytes into the stored format."""

    @abstractmethod
    async def transform(self, data: bytes) -> bytes:
        """Convert raw image bytes. Raises TransformError on bad input."""


__all__ = ["IAssetStore", "IImageTransformer", "IMetadataSource"]
