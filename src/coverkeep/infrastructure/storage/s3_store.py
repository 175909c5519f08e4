"""S3-compatible asset store (Backblaze B2 by default)."""

import asyncio
import logging
import uuid
from typing import Any

import boto3
from botocore.exceptions import ClientError

from coverkeep.config.settings import StorageSettings
from coverkeep.domain.entities import StoredAsset
from coverkeep.domain.ports import IAssetStore
from coverkeep.infrastructure.storage.local_store import asset_key

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class S3AssetStore(IAssetStore):
    """Stores covers as public-read objects in an S3-compatible bucket.

    Hey future me - boto3 is blocking! Every client call runs through
    asyncio.to_thread so the worker's event loop stays responsive. Public URLs are
    <public_base_url>/<key>, which for B2 is https://<bucket>.s3.<region>.backblazeb2.com.
    """

    def __init__(self, settings: StorageSettings, client: Any | None = None) -> None:
        """Initialize S3 store.

        Args:
            settings: Storage settings with bucket, region and credentials
            client: Pre-built boto3 S3 client (tests pass a stub here)
        """
        self.bucket = settings.bucket or ""
        self.public_base_url = settings.resolved_public_base_url()
        self._client = client or boto3.client(
            "s3",
            endpoint_url=settings.resolved_endpoint_url(),
            region_name=settings.region,
            aws_access_key_id=settings.access_key_id,
            aws_secret_access_key=settings.secret_access_key,
        )

    @property
    def backend_name(self) -> str:
        return "s3"

    async def write(self, data: bytes, meta: dict[str, Any]) -> StoredAsset:
        asset_id = uuid.uuid4().hex
        key = asset_key(asset_id)
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType="image/webp",
            CacheControl="public, max-age=31536000, immutable",
            Metadata={k: str(v) for k, v in meta.items() if v is not None},
        )
        logger.debug("Uploaded cover to s3://%s/%s (%d bytes)", self.bucket, key, len(data))

        return StoredAsset(
            asset_id=asset_id,
            url=f"{self.public_base_url}/{key}",
            key=key,
            size=len(data),
            meta=dict(meta),
        )

    async def exists(self, key: str) -> bool:
        """HeadObject; a 404 means missing, any other error propagates."""
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                return False
            raise
        return True

    def owns_url(self, url: str) -> bool:
        return bool(url) and url.startswith(f"{self.public_base_url}/")

    def key_from_url(self, url: str) -> str | None:
        if not self.owns_url(url):
            return None
        key = url[len(self.public_base_url) + 1 :]
        return key or None

    async def delete(self, key: str) -> bool:
        if not await self.exists(key):
            return False
        await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket, Key=key)
        return True
