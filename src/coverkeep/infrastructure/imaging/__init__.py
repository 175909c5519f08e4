"""Image transformation."""

from .webp_transformer import WebPTransformer

__all__ = ["WebPTransformer"]
