import asyncio
import json
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import aiohttp

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from spotipack.config import ChannelConfig
from spotipack.credentials import CredentialState, SpotifyCredentials, TwitchCredentials, TWITCH_SCOPES
from spotipack.errors import (
    AuthExpired,
    CredentialUnavailable,
    Forbidden,
    TransientError,
    ValidationFailure,
)
from spotipack.http_client import JsonClient
from spotipack.resolver import SongResolver
from spotipack.spotify_api import SpotifyAPI
from spotipack.submitter import QueueSubmitter, Requester
from spotipack.twitch_api import TwitchAPI

TRACK = {
    "id": "abc",
    "name": "Song",
    "uri": "spotify:track:abc",
    "duration_ms": 200_000,
    "artists": [{"name": "Band"}],
}


class FakeSpotifyServer:
    """Rejects the stale token with a 401 and serves canned bodies for the fresh one."""

    def __init__(self) -> None:
        self.calls = []

    async def __call__(self, method, path, *, headers=None, params=None, json=None, data=None):
        token = (headers or {}).get("Authorization")
        self.calls.append((method, path, token))
        if token == "Bearer old":
            raise AuthExpired(401, "The access token expired", service="spotify")
        if path == "/tracks/abc":
            return dict(TRACK)
        if path == "/search":
            return {"tracks": {"items": [{"id": "found"}]}}
        if path == "/me/player/queue" and method == "GET":
            return {"queue": [dict(TRACK)]}
        return None


def _write_token(path: Path, access: str = "old", scopes=None) -> None:
    path.write_text(json.dumps({
        "access_token": access,
        "refresh_token": "refresh-1",
        "scopes": list(scopes or []),
    }), encoding="utf-8")


class SpotifyRetryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        path = Path(self._tmp.name) / "spotify_token.json"
        _write_token(path)
        self.credentials = SpotifyCredentials("sid", "ssecret", path, port=8888)
        self.credentials.load()
        self.credentials._state = CredentialState.AUTHENTICATED
        self.credentials._request_refresh = AsyncMock(return_value={"access_token": "new"})
        self.server = FakeSpotifyServer()
        self.api = SpotifyAPI(self.credentials)
        self.api._req = self.server

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_expired_token_is_refreshed_before_enqueue(self) -> None:
        config = ChannelConfig(
            channel_name="chan",
            user_name="bot",
            added_to_queue_messages=["$(username) queued $(trackName) by $(artists)"],
        )

        result = await QueueSubmitter(self.api, config).submit("abc", Requester(name="Amy"))

        self.assertTrue(result.ok)
        self.assertEqual(result.message, "Amy queued Song by Band")
        self.credentials._request_refresh.assert_awaited_once_with("refresh-1")
        self.assertEqual(self.server.calls, [
            ("GET", "/tracks/abc", "Bearer old"),
            ("GET", "/tracks/abc", "Bearer new"),
            ("POST", "/me/player/queue", "Bearer new"),
        ])

    async def test_search_is_retried_after_refresh(self) -> None:
        self.assertEqual(await SongResolver(self.api).resolve("toxic"), "found")

        self.credentials._request_refresh.assert_awaited_once()
        self.assertEqual(self.server.calls[-1], ("GET", "/search", "Bearer new"))

    async def test_concurrent_calls_share_one_refresh(self) -> None:
        track, queue = await asyncio.gather(self.api.track("abc"), self.api.queue())

        self.assertEqual(track["id"], "abc")
        self.assertEqual(len(queue), 1)
        self.credentials._request_refresh.assert_awaited_once()

    async def test_rejected_refresh_surfaces_original_error(self) -> None:
        self.credentials._request_refresh.side_effect = ValidationFailure(400, "invalid_grant")

        with self.assertRaises(AuthExpired):
            await self.api.skip()

        self.assertFalse(self.api.available)
        with self.assertRaises(CredentialUnavailable):
            await self.api.skip()
        self.assertEqual(len(self.server.calls), 1)

    async def test_unauthenticated_credential_is_not_called(self) -> None:
        self.credentials._state = CredentialState.UNAUTHENTICATED

        with self.assertRaises(CredentialUnavailable):
            await self.api.currently_playing()

        self.assertEqual(self.server.calls, [])


class TwitchRetryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        path = Path(self._tmp.name) / "twitch_token.json"
        _write_token(path, scopes=TWITCH_SCOPES)
        self.credentials = TwitchCredentials("cid", "csecret", path)
        self.credentials.load()
        self.credentials._state = CredentialState.AUTHENTICATED
        self.credentials._request_refresh = AsyncMock(return_value={"access_token": "new"})
        self.api = TwitchAPI(self.credentials)

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_helix_call_sends_client_id_and_retries(self) -> None:
        seen = []

        async def helix(method, path, *, headers=None, params=None, json=None, data=None):
            seen.append(dict(headers))
            if headers["Authorization"] == "Bearer old":
                raise AuthExpired(401, "Invalid OAuth token", service="twitch")
            return {"data": [{"id": "r-1", "status": "UNFULFILLED"}]}

        self.api._req = helix

        redemptions = await self.api.get_redemptions("b1", "reward")

        self.assertEqual(redemptions, [{"id": "r-1", "status": "UNFULFILLED"}])
        self.assertEqual([h["Authorization"] for h in seen], ["Bearer old", "Bearer new"])
        self.assertTrue(all(h["Client-Id"] == "cid" for h in seen))


def _response(status: int, body=None, *, content_type: str = "application/json", text: str = "") -> MagicMock:
    response = MagicMock()
    response.status = status
    response.headers = {"content-type": content_type}
    response.json = AsyncMock(return_value=body)
    response.text = AsyncMock(return_value=text)
    return response


class JsonClientTests(unittest.IsolatedAsyncioTestCase):
    def _client(self, response: MagicMock) -> JsonClient:
        client = JsonClient("https://api.example.test/v1")
        client.service = "spotify"
        client.session = MagicMock()
        client.session.request.return_value.__aenter__.return_value = response
        client.session.request.return_value.__aexit__.return_value = False
        return client

    async def test_status_codes_map_to_error_classes(self) -> None:
        cases = [
            (401, {"error": {"status": 401, "message": "The access token expired"}}, AuthExpired),
            (403, {"error": {"status": 403, "message": "Player command failed: Premium required"}}, Forbidden),
            (404, {"error": {"status": 404, "message": "Non existing id"}}, ValidationFailure),
            (400, {"error": "Bad Request", "status": 400, "message": "Missing broadcaster_id"}, ValidationFailure),
            (429, {"error": {"status": 429, "message": "API rate limit exceeded"}}, TransientError),
            (500, {"error": {"status": 500, "message": "Server error"}}, TransientError),
        ]
        for status, body, expected in cases:
            with self.subTest(status=status):
                client = self._client(_response(status, body))
                with self.assertRaises(expected) as ctx:
                    await client._req("GET", "/me/player")
                self.assertIs(type(ctx.exception), expected)
                self.assertEqual(ctx.exception.status, status)
                self.assertEqual(ctx.exception.service, "spotify")

        self.assertEqual(ctx.exception.detail, "Server error")

    async def test_error_detail_from_token_endpoint_and_text(self) -> None:
        client = self._client(_response(400, {"error": "invalid_grant", "error_description": "Invalid refresh token"}))
        with self.assertRaises(ValidationFailure) as ctx:
            await client._req("POST", "https://accounts.example.test/api/token", data={"grant_type": "refresh_token"})
        self.assertEqual(ctx.exception.detail, "Invalid refresh token")

        client = self._client(_response(502, content_type="text/html", text="upstream down"))
        with self.assertRaises(TransientError) as ctx:
            await client._req("GET", "/me/player")
        self.assertEqual((ctx.exception.status, ctx.exception.detail), (502, "upstream down"))

    async def test_no_content_and_json_bodies(self) -> None:
        client = self._client(_response(204))
        self.assertIsNone(await client._req("POST", "/me/player/next"))

        client = self._client(_response(200, {"device": {"volume_percent": 40}}))
        self.assertEqual(await client._req("GET", "/me/player"), {"device": {"volume_percent": 40}})
        method, url = client.session.request.call_args.args
        self.assertEqual((method, url), ("GET", "https://api.example.test/v1/me/player"))

        client = self._client(_response(200, content_type="text/plain", text=""))
        self.assertIsNone(await client._req("PUT", "/me/player/volume"))

    async def test_network_failure_is_transient(self) -> None:
        client = JsonClient()
        client.service = "twitch"
        client.session = MagicMock()
        client.session.request.side_effect = aiohttp.ClientConnectionError("connection reset")

        with self.assertRaises(TransientError) as ctx:
            await client._req("GET", "https://api.example.test/helix/users")

        self.assertEqual((ctx.exception.status, ctx.exception.service), (0, "twitch"))

        client.session.request.side_effect = asyncio.TimeoutError()
        with self.assertRaises(TransientError) as ctx:
            await client._req("GET", "https://api.example.test/helix/users")
        self.assertEqual(ctx.exception.detail, "TimeoutError")


if __name__ == "__main__":
    unittest.main()
