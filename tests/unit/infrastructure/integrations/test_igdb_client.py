"""Tests for IGDBClient.

Hey future me - no real IGDB here. httpx.MockTransport answers both the Twitch
token endpoint and the IGDB games endpoint, so we can count token fetches and
inspect the Apicalypse bodies we send.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from coverkeep.config import IGDBSettings
from coverkeep.domain.exceptions import ConfigurationError, MetadataSourceError
from coverkeep.infrastructure.integrations.igdb_client import IGDBClient, parse_game
from coverkeep.infrastructure.rate_limiter import RateLimiter, RateLimiterConfig

TOKEN_URL = "https://id.twitch.test/oauth2/token"
API_BASE = "https://api.igdb.test/v4"

RAW_CELESTE = {
    "id": 26226,
    "name": "Celeste",
    "slug": "celeste",
    "summary": "Help Madeline survive her inner demons.",
    "cover": {"id": 85, "image_id": "co1wyy"},
    "platforms": [{"id": 6, "name": "PC (Microsoft Windows)"}, {"id": 130, "name": "Nintendo Switch"}],
    "genres": [{"id": 8, "name": "Platform"}],
    "themes": [],
    "first_release_date": 1516665600,
    "involved_companies": [
        {"company": {"id": 1, "name": "Maddy Makes Games"}, "developer": True, "publisher": True},
        {"company": {"id": 2, "name": "Porting House"}, "developer": False, "publisher": False},
    ],
    "rating": 91.5,
    "aggregated_rating": 92.0,
    "updated_at": 1700000000,
    "checksum": "d5b9a8c2-0000-0000-0000-000000000000",
}


class FakeIGDBServer:
    """Records requests and answers like Twitch + IGDB."""

    def __init__(self) -> None:
        self.token_requests = 0
        self.game_bodies: list[str] = []
        self.game_responses: list[httpx.Response] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url).startswith(TOKEN_URL):
            self.token_requests += 1
            return httpx.Response(
                200, json={"access_token": f"token-{self.token_requests}", "expires_in": 5184000}
            )

        assert request.headers["Client-ID"] == "client-id"
        assert request.headers["Authorization"].startswith("Bearer token-")
        body = request.content.decode()
        self.game_bodies.append(body)
        if self.game_responses:
            return self.game_responses.pop(0)
        ids = body.split("where id = ")[1].split(";")[0].strip("()")
        return httpx.Response(200, json=[{"id": int(i), "name": f"Game {i}"} for i in ids.split(",")])


def _settings(**overrides: object) -> IGDBSettings:
    values: dict[str, object] = {
        "client_id": "client-id",
        "client_secret": "secret",
        "token_url": TOKEN_URL,
        "api_base_url": API_BASE,
        "image_base_url": "https://images.igdb.test/igdb/image/upload",
    }
    values.update(overrides)
    return IGDBSettings(**values)  # type: ignore[arg-type]


def _limiter() -> RateLimiter:
    return RateLimiter(config=RateLimiterConfig(max_tokens=100, refill_rate=1000.0), name="test")


class TestParseGame:
    """Test IGDB JSON to GameMetadata conversion."""

    def test_parse_full_record(self) -> None:
        """All fields are mapped, companies split by role."""
        game = parse_game(RAW_CELESTE)

        assert game.remote_id == 26226
        assert game.name == "Celeste"
        assert game.cover_image_id == "co1wyy"
        assert game.platforms == ["PC (Microsoft Windows)", "Nintendo Switch"]
        assert game.genres == ["Platform"]
        assert game.themes == []
        assert game.release_year == 2018
        assert game.developer == "Maddy Makes Games"
        assert game.publisher == "Maddy Makes Games"
        assert game.checksum == RAW_CELESTE["checksum"]
        assert game.remote_updated_at is not None

    def test_parse_minimal_record(self) -> None:
        """Missing optional fields become None / empty lists."""
        game = parse_game({"id": 1})

        assert game.name == ""
        assert game.cover_image_id is None
        assert game.release_date is None
        assert game.platforms == []
        assert game.developer is None

    def test_catalog_fields(self) -> None:
        """to_catalog_fields() maps onto catalog column names."""
        fields = parse_game(RAW_CELESTE).to_catalog_fields()

        assert fields["title"] == "Celeste"
        assert fields["remote_image_id"] == "co1wyy"
        assert fields["metadata_checksum"] == RAW_CELESTE["checksum"]


class TestIGDBClient:
    """Test token handling, batching and rate limit retries."""

    @pytest.fixture
    def server(self) -> FakeIGDBServer:
        """Fake Twitch + IGDB."""
        return FakeIGDBServer()

    @pytest.fixture
    def client(self, server: FakeIGDBServer) -> IGDBClient:
        """Client talking to the fake server."""
        http = httpx.AsyncClient(transport=httpx.MockTransport(server))
        return IGDBClient(_settings(max_batch_size=2), client=http, rate_limiter=_limiter())

    async def test_fetch_by_id(self, client: IGDBClient, server: FakeIGDBServer) -> None:
        """Single fetch sends a where-id query and parses the result."""
        server.game_responses.append(httpx.Response(200, json=[RAW_CELESTE]))

        game = await client.fetch_by_id(26226)

        assert game is not None
        assert game.name == "Celeste"
        assert "where id = 26226;" in server.game_bodies[0]
        assert server.game_bodies[0].startswith("fields name, slug")

    async def test_fetch_by_id_unknown(self, client: IGDBClient, server: FakeIGDBServer) -> None:
        """Empty result means the game is unknown."""
        server.game_responses.append(httpx.Response(200, json=[]))

        assert await client.fetch_by_id(1) is None

    async def test_token_is_cached(self, client: IGDBClient, server: FakeIGDBServer) -> None:
        """Two requests, one token fetch."""
        await client.fetch_by_ids([1])
        await client.fetch_by_ids([2])

        assert server.token_requests == 1

    async def test_fetch_by_ids_splits_batches(
        self, client: IGDBClient, server: FakeIGDBServer
    ) -> None:
        """5 ids with max_batch_size 2: three requests, all results merged."""
        games = await client.fetch_by_ids([1, 2, 3, 4, 5])

        assert [g.remote_id for g in games] == [1, 2, 3, 4, 5]
        assert len(server.game_bodies) == 3
        assert "where id = (1,2); limit 2;" in server.game_bodies[0]
        assert "where id = (5); limit 2;" in server.game_bodies[2]

    async def test_fetch_by_ids_empty(self, client: IGDBClient, server: FakeIGDBServer) -> None:
        """No ids, no request."""
        assert await client.fetch_by_ids([]) == []
        assert server.token_requests == 0

    async def test_rate_limited_request_is_retried(
        self, client: IGDBClient, server: FakeIGDBServer, mocker: MagicMock
    ) -> None:
        """429 goes through the limiter backoff and is retried."""
        sleep = mocker.patch(
            "coverkeep.infrastructure.rate_limiter.asyncio.sleep", new_callable=AsyncMock
        )
        server.game_responses.extend(
            [
                httpx.Response(429, headers={"Retry-After": "2"}),
                httpx.Response(200, json=[RAW_CELESTE]),
            ]
        )

        game = await client.fetch_by_id(26226)

        assert game is not None
        sleep.assert_any_await(2.0)
        assert len(server.game_bodies) == 2

    async def test_rate_limit_retries_exhausted(
        self, client: IGDBClient, server: FakeIGDBServer, mocker: MagicMock
    ) -> None:
        """Three 429s in a row raise MetadataSourceError(429)."""
        mocker.patch(
            "coverkeep.infrastructure.rate_limiter.asyncio.sleep", new_callable=AsyncMock
        )
        server.game_responses.extend([httpx.Response(429) for _ in range(3)])

        with pytest.raises(MetadataSourceError) as exc_info:
            await client.fetch_by_id(26226)

        assert exc_info.value.status_code == 429

    async def test_unauthorized_clears_token(
        self, client: IGDBClient, server: FakeIGDBServer
    ) -> None:
        """401 raises and forces a fresh token on the next call."""
        server.game_responses.append(httpx.Response(401, text="invalid token"))

        with pytest.raises(MetadataSourceError):
            await client.fetch_by_id(1)
        await client.fetch_by_ids([1])

        assert server.token_requests == 2

    async def test_token_failure_raises(self) -> None:
        """Twitch rejecting the credentials surfaces as MetadataSourceError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, text=json.dumps({"message": "invalid client secret"}))

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = IGDBClient(_settings(), client=http, rate_limiter=_limiter())

        with pytest.raises(MetadataSourceError) as exc_info:
            await client.fetch_by_id(1)

        assert exc_info.value.status_code == 400

    async def test_missing_credentials(self) -> None:
        """Unconfigured client refuses API calls."""
        client = IGDBClient(_settings(client_id=None), client=MagicMock(), rate_limiter=_limiter())

        with pytest.raises(ConfigurationError):
            await client.fetch_by_id(1)

    def test_cover_url(self) -> None:
        """Cover URL follows IGDB's t_<size>/<image_id>.jpg scheme."""
        client = IGDBClient(_settings(), client=MagicMock())

        assert (
            client.cover_url("co1wyy", "cover_big")
            == "https://images.igdb.test/igdb/image/upload/t_cover_big/co1wyy.jpg"
        )
        assert client.cover_url("", "cover_big") is None
        assert client.max_batch_size == 500
