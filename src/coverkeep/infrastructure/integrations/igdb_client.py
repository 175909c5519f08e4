"""IGDB HTTP client implementation with rate limiting."""

import logging
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import httpx

from coverkeep.config.settings import IGDBSettings
from coverkeep.domain.entities import GameMetadata
from coverkeep.domain.exceptions import ConfigurationError, MetadataSourceError
from coverkeep.domain.ports import IMetadataSource
from coverkeep.infrastructure.integrations.http_pool import HttpClientPool
from coverkeep.infrastructure.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Refresh the Twitch token this many seconds before it actually expires
TOKEN_EXPIRY_BUFFER_SECONDS = 300

# Hey future me - fetch_by_id() and fetch_by_ids() MUST ask for the same fields, otherwise
# the checksum comparison in reconciliation sees a "changed" record that only differs in
# what we requested. IGDB computes checksum over the full record, not our projection.
GAME_FIELDS = (
    "name, slug, summary, storyline, cover.image_id, "
    "platforms.id, platforms.name, genres.id, genres.name, themes.id, themes.name, "
    "first_release_date, involved_companies.company.id, involved_companies.company.name, "
    "involved_companies.developer, involved_companies.publisher, "
    "rating, rating_count, aggregated_rating, aggregated_rating_count, "
    "updated_at, checksum"
)

MAX_RATE_LIMIT_RETRIES = 3


def _names(items: list[dict[str, Any]] | None) -> list[str]:
    return [item["name"] for item in items or [] if item.get("name")]


def _from_timestamp(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def parse_game(raw: dict[str, Any]) -> GameMetadata:
    """Transform one IGDB game JSON object into GameMetadata."""
    companies = raw.get("involved_companies") or []
    developer = next(
        (c.get("company", {}).get("name") for c in companies if c.get("developer")),
        None,
    )
    publisher = next(
        (c.get("company", {}).get("name") for c in companies if c.get("publisher")),
        None,
    )
    release_date = _from_timestamp(raw.get("first_release_date"))

    return GameMetadata(
        remote_id=int(raw["id"]),
        name=raw.get("name") or "",
        slug=raw.get("slug"),
        summary=raw.get("summary"),
        storyline=raw.get("storyline"),
        platforms=_names(raw.get("platforms")),
        genres=_names(raw.get("genres")),
        themes=_names(raw.get("themes")),
        release_date=release_date,
        release_year=release_date.year if release_date else None,
        developer=developer,
        publisher=publisher,
        cover_image_id=(raw.get("cover") or {}).get("image_id"),
        rating=raw.get("rating"),
        aggregated_rating=raw.get("aggregated_rating"),
        remote_updated_at=_from_timestamp(raw.get("updated_at")),
        checksum=raw.get("checksum"),
    )


class IGDBClient(IMetadataSource):
    """HTTP client for the IGDB v4 API.

    Hey future me, IGDB authenticates through Twitch client credentials! We POST
    client_id + client_secret to the Twitch token endpoint, get a bearer token that
    lives ~60 days, and cache it until 5 minutes before expiry. Every API call is a
    POST with an Apicalypse query as plain-text body, NOT JSON. Rate limit is 4 req/s,
    a 429 goes through the limiter's adaptive backoff and is retried.
    """

    def __init__(
        self,
        settings: IGDBSettings,
        client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        """Initialize IGDB client.

        Args:
            settings: IGDB configuration settings
            client: HTTP client to use (defaults to the shared pool)
            rate_limiter: Limiter shared by all requests of this client
        """
        self.settings = settings
        self._client = client
        self._rate_limiter = rate_limiter or RateLimiter.for_igdb(
            settings.requests_per_second
        )
        self._access_token: str | None = None
        self._token_expires_at: float = 0.0

    @property
    def max_batch_size(self) -> int:
        return self.settings.max_batch_size

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = await HttpClientPool.get_client()
        return self._client

    async def _get_access_token(self) -> str:
        """Return a cached Twitch token or fetch a new one."""
        now = time.monotonic()
        if (
            self._access_token
            and now < self._token_expires_at - TOKEN_EXPIRY_BUFFER_SECONDS
        ):
            return self._access_token

        if not self.settings.is_configured:
            raise ConfigurationError("IGDB credentials are not configured")

        client = await self._get_client()
        try:
            response = await client.post(
                self.settings.token_url,
                params={
                    "client_id": self.settings.client_id,
                    "client_secret": self.settings.client_secret,
                    "grant_type": "client_credentials",
                },
                timeout=self.settings.request_timeout,
            )
        except httpx.HTTPError as e:
            raise MetadataSourceError(f"Failed to reach Twitch token endpoint: {e}") from e

        if response.status_code != 200:
            raise MetadataSourceError(
                f"Failed to get IGDB access token: {response.text}",
                status_code=response.status_code,
            )

        data = response.json()
        self._access_token = data["access_token"]
        self._token_expires_at = now + float(data.get("expires_in", 0))
        logger.info(
            f"IGDB: Obtained new access token, expires in {data.get('expires_in')} seconds"
        )
        return self._access_token

    async def _request(self, endpoint: str, body: str) -> list[dict[str, Any]]:
        """POST an Apicalypse query to an IGDB endpoint."""
        token = await self._get_access_token()
        client = await self._get_client()
        url = f"{self.settings.api_base_url.rstrip('/')}/{endpoint}"
        headers = {
            "Client-ID": self.settings.client_id or "",
            "Authorization": f"Bearer {token}",
            "Content-Type": "text/plain",
        }

        for attempt in range(1, MAX_RATE_LIMIT_RETRIES + 1):
            await self._rate_limiter.acquire()
            try:
                response = await client.post(
                    url,
                    content=body,
                    headers=headers,
                    timeout=self.settings.request_timeout,
                )
            except httpx.HTTPError as e:
                raise MetadataSourceError(f"IGDB request failed: {e}") from e

            if response.status_code == 429 and attempt < MAX_RATE_LIMIT_RETRIES:
                retry_after = response.headers.get("Retry-After")
                await self._rate_limiter.handle_rate_limit_response(
                    float(retry_after) if retry_after else None
                )
                continue

            if response.status_code == 401:
                # Token revoked server-side, next call fetches a fresh one
                self._access_token = None

            if response.status_code != 200:
                raise MetadataSourceError(
                    f"IGDB API error: {response.status_code} - {response.text}",
                    status_code=response.status_code,
                )
            self._rate_limiter.reset_backoff()
            return list(response.json())

        raise MetadataSourceError("IGDB rate limit retries exhausted", status_code=429)

    async def fetch_by_id(self, remote_id: int) -> GameMetadata | None:
        body = f"fields {GAME_FIELDS}; where id = {int(remote_id)};"
        results = await self._request("games", body)
        return parse_game(results[0]) if results else None

    async def fetch_by_ids(self, remote_ids: Sequence[int]) -> list[GameMetadata]:
        """Fetch many games, split into requests of at most max_batch_size ids."""
        ids = [int(i) for i in remote_ids]
        if not ids:
            return []

        batch_size = self.max_batch_size
        games: list[GameMetadata] = []
        for start in range(0, len(ids), batch_size):
            batch = ids[start : start + batch_size]
            id_list = ",".join(str(i) for i in batch)
            body = (
                f"fields {GAME_FIELDS}; where id = ({id_list}); limit {batch_size};"
            )
            results = await self._request("games", body)
            games.extend(parse_game(raw) for raw in results)
        return games

    def cover_url(self, image_id: str, size_variant: str = "cover_big") -> str | None:
        if not image_id:
            return None
        base = self.settings.image_base_url.rstrip("/")
        return f"{base}/t_{size_variant}/{image_id}.jpg"
