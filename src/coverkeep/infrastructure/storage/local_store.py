"""Local filesystem asset store."""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any

from coverkeep.domain.entities import StoredAsset
from coverkeep.domain.ports import IAssetStore

logger = logging.getLogger(__name__)


def asset_key(asset_id: str) -> str:
    """Storage key for an asset: {id[:2]}/{id}.webp.

    Sharding by the first 2 chars keeps any single directory (or S3 prefix listing)
    from growing to hundreds of thousands of entries.
    """
    subdir = asset_id[:2] if len(asset_id) >= 2 else "00"
    return f"{subdir}/{asset_id}.webp"


class LocalAssetStore(IAssetStore):
    """Stores covers as files under base_path, served under url_prefix.

    Hey future me - the URL is what ends up in the catalog (local_asset_url), e.g.
    /covers/ab/ab12....webp. The web server is expected to serve base_path under
    url_prefix. key_from_url() simply strips the prefix again.
    """

    def __init__(self, base_path: Path | str, url_prefix: str = "/covers") -> None:
        self.base_path = Path(base_path)
        self.url_prefix = "/" + url_prefix.strip("/")

    @property
    def backend_name(self) -> str:
        return "local"

    def _path_for(self, key: str) -> Path:
        return self.base_path / key

    async def write(self, data: bytes, meta: dict[str, Any]) -> StoredAsset:
        asset_id = uuid.uuid4().hex
        key = asset_key(asset_id)
        path = self._path_for(key)

        def _write_sync() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write_sync)
        logger.debug("Saved cover to %s (%d bytes)", path, len(data))

        return StoredAsset(
            asset_id=asset_id,
            url=f"{self.url_prefix}/{key}",
            key=key,
            size=len(data),
            meta=dict(meta),
        )

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path_for(key).is_file)

    def owns_url(self, url: str) -> bool:
        return bool(url) and url.startswith(f"{self.url_prefix}/")

    def key_from_url(self, url: str) -> str | None:
        if not self.owns_url(url):
            return None
        key = url[len(self.url_prefix) + 1 :]
        return key or None

    async def delete(self, key: str) -> bool:
        path = self._path_for(key)

        def _delete_sync() -> bool:
            if not path.is_file():
                return False
            path.unlink()
            return True

        return await asyncio.to_thread(_delete_sync)
