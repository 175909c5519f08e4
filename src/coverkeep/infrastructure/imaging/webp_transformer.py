"""WebP image transformer (Pillow)."""

import asyncio
import logging
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from coverkeep.domain.exceptions import TransformError
from coverkeep.domain.ports import IImageTransformer

logger = logging.getLogger(__name__)


class WebPTransformer(IImageTransformer):
    """Re-encode downloaded covers as WebP.

    Future me note:
    Runs PIL in a worker thread because it's CPU-bound! method=6 is Pillow's name
    for libwebp "effort" 6, the slowest and smallest setting. Covers are encoded
    once and served forever, so the extra CPU is paid exactly once per game.
    """

    def __init__(
        self, quality: int = 75, method: int = 6, max_size: int | None = None
    ) -> None:
        self.quality = quality
        self.method = method
        self.max_size = max_size

    def _process_sync(self, data: bytes) -> bytes:
        with Image.open(BytesIO(data)) as img:
            img.load()
            if img.mode == "P":
                # Palette images keep transparency only through RGBA
                img = img.convert("RGBA")
            elif img.mode not in ("RGB", "RGBA"):
                img = img.convert("RGB")

            if self.max_size:
                img.thumbnail((self.max_size, self.max_size), Image.Resampling.LANCZOS)

            output = BytesIO()
            img.save(output, format="WEBP", quality=self.quality, method=self.method)
            return output.getvalue()

    async def transform(self, data: bytes) -> bytes:
        if not data:
            raise TransformError("empty image data")
        try:
            return await asyncio.to_thread(self._process_sync, data)
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise TransformError(f"cannot convert image to WebP: {e}") from e
