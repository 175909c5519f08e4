"""Asset store backends."""

from .factory import create_asset_store
from .local_store import LocalAssetStore, asset_key

__all__ = ["LocalAssetStore", "asset_key", "create_asset_store"]
