"""Pick the active asset store backend from settings."""

import logging

from coverkeep.config.settings import StorageSettings
from coverkeep.domain.ports import IAssetStore
from coverkeep.infrastructure.storage.local_store import LocalAssetStore

logger = logging.getLogger(__name__)


# Hey future me - a half-configured S3 backend does NOT crash startup! We log loudly and
# fall back to local disk so covers keep flowing. Reconciliation will later see the local
# URLs as foreign once S3 is fixed and re-fetch them there.
def create_asset_store(settings: StorageSettings) -> IAssetStore:
    """Build the single active asset store."""
    if settings.backend == "s3":
        if settings.s3_configured:
            from coverkeep.infrastructure.storage.s3_store import S3AssetStore

            logger.info(
                "Using S3 asset store (bucket=%s, base=%s)",
                settings.bucket,
                settings.resolved_public_base_url(),
            )
            return S3AssetStore(settings)
        logger.error(
            "Storage backend 's3' selected but bucket/region/credentials are incomplete, "
            "falling back to local storage"
        )

    logger.info("Using local asset store at %s", settings.local_path)
    return LocalAssetStore(settings.local_path, settings.local_url_prefix)
