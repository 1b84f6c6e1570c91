import asyncio
import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from spotipack.oauth_server import OAuthCallbackServer, create_callback_app, create_overlay_app


class CallbackAppTests(unittest.TestCase):
    def setUp(self) -> None:
        self.codes = []
        self.errors = []
        app = create_callback_app(
            "https://accounts.example/authorize?client_id=abc",
            service_label="Spotify",
            on_code=self.codes.append,
            on_error=self.errors.append,
        )
        self.client = TestClient(app)

    def test_login_redirects_to_provider(self) -> None:
        response = self.client.get("/login", follow_redirects=False)

        self.assertIn(response.status_code, (302, 307))
        self.assertEqual(response.headers["location"], "https://accounts.example/authorize?client_id=abc")

    def test_callback_captures_code(self) -> None:
        response = self.client.get("/callback", params={"code": "xyz"})

        self.assertEqual(response.status_code, 200)
        self.assertIn("Spotify OAuth complete", response.text)
        self.assertEqual(self.codes, ["xyz"])
        self.assertEqual(self.errors, [])

    def test_callback_without_code(self) -> None:
        response = self.client.get("/callback")

        self.assertEqual(response.status_code, 400)
        self.assertIn("Missing authorization code", response.text)
        self.assertEqual(self.codes, [])

    def test_provider_error_is_reported(self) -> None:
        response = self.client.get("/callback", params={"error": "access_denied"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.errors, ["access_denied"])


class OverlayAppTests(unittest.TestCase):
    def test_track_endpoint(self) -> None:
        app = create_overlay_app(AsyncMock(return_value="Artist - Song"))
        client = TestClient(app)

        self.assertEqual(client.get("/now-playing-track").text, "Artist - Song")
        self.assertIn("track-text", client.get("/now-playing").text)

    def test_track_endpoint_when_idle(self) -> None:
        client = TestClient(create_overlay_app(AsyncMock(return_value=None)))

        self.assertEqual(client.get("/now-playing-track").text, "Nothing playing right now")


class CallbackServerTests(unittest.IsolatedAsyncioTestCase):
    async def test_future_resolves_once(self) -> None:
        server = OAuthCallbackServer(port=3000, authorize_url="https://x", service_label="Twitch", browser_open=MagicMock())
        server._future = asyncio.get_running_loop().create_future()

        server._resolve("first")
        server._resolve("second")
        server._fail("late error")

        self.assertEqual(server._future.result(), "first")
        self.assertEqual(server.login_url, "http://localhost:3000/login")


if __name__ == "__main__":
    unittest.main()
