"""External service integrations."""

from .http_pool import HttpClientPool
from .igdb_client import IGDBClient

__all__ = ["HttpClientPool", "IGDBClient"]
