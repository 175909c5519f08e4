"""Cover URL helpers for catalog consumers.

Hey future me - nothing inside coverkeep calls these! They are the public read side
for the catalog app that renders game pages: import them from
coverkeep.application.services.covers instead of re-implementing the fallback
order (stored copy, then remote IGDB image) in every template.
"""

from coverkeep.domain.entities import CatalogEntry
from coverkeep.domain.ports import IMetadataSource


def resolve_cover_url(
    entry: CatalogEntry,
    metadata_source: IMetadataSource | None = None,
    size_variant: str = "cover_big",
) -> str | None:
    """Best URL to show for an entry's cover.

    Our stored copy wins, then the remote IGDB image, then nothing.
    """
    if entry.local_asset_url:
        return entry.local_asset_url
    if entry.remote_image_id and metadata_source is not None:
        return metadata_source.cover_url(entry.remote_image_id, size_variant)
    return None


def needs_cover_processing(entry: CatalogEntry) -> bool:
    """True if the entry has a remote cover we never stored."""
    return entry.needs_cover
