import sys
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from spotipack.config import ChannelConfig
from spotipack.errors import TransientError
from spotipack.player import PlayerCommands, parse_volume

PLAYING = {
    "item": {
        "name": "Song",
        "artists": [{"name": "Band"}],
        "external_urls": {"spotify": "https://open.spotify.com/track/abc"},
    },
}


class ParseVolumeTests(unittest.TestCase):
    def test_parse_volume(self) -> None:
        self.assertEqual(parse_volume("40"), 40)
        self.assertEqual(parse_volume("75%"), 75)
        self.assertEqual(parse_volume("150"), 100)
        self.assertEqual(parse_volume("-5"), 0)
        self.assertIsNone(parse_volume("loud"))


class PlayerCommandTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.spotify = SimpleNamespace(
            player=AsyncMock(return_value={"device": {"volume_percent": 55}}),
            set_volume=AsyncMock(),
            currently_playing=AsyncMock(return_value=PLAYING),
            skip=AsyncMock(),
            queue=AsyncMock(return_value=[]),
        )
        self.player = PlayerCommands(self.spotify, ChannelConfig(channel_name="c", user_name="b", queue_display_depth=2))

    async def test_volume(self) -> None:
        self.assertEqual(await self.player.current_volume("Amy"), "Amy, the current volume is 55!")
        self.assertEqual(await self.player.set_volume("Amy", "120"), "Amy has set the current volume to 100!")
        self.spotify.set_volume.assert_awaited_once_with(100)
        self.assertEqual(await self.player.set_volume("Amy", "abc"), "Amy, a number between 0 and 100 is required.")

    async def test_volume_failure(self) -> None:
        self.spotify.set_volume.side_effect = TransientError(502, "bad gateway")

        self.assertEqual(await self.player.set_volume("Amy", "20"), "There was a problem setting the volume")

    async def test_skip_names_the_track(self) -> None:
        self.assertEqual(await self.player.skip("Amy"), "Amy skipped Song!")
        self.spotify.skip.assert_awaited_once()

    async def test_track_name(self) -> None:
        self.assertEqual(await self.player.track_name(), "▶️ Band - Song -> https://open.spotify.com/track/abc")

        self.spotify.currently_playing.return_value = None
        self.assertEqual(await self.player.track_name(), "Seems like no music is playing right now")

    async def test_queue_peek(self) -> None:
        self.assertEqual(await self.player.queue_peek(), "Nothing in the queue.")

        self.spotify.queue.return_value = [
            {"name": "One", "artists": [{"name": "A"}]},
            {"name": "Two", "artists": [{"name": "B"}]},
            {"name": "Three", "artists": [{"name": "C"}]},
        ]
        self.assertEqual(
            await self.player.queue_peek(),
            "▶️ Next 2 songs: • 1) A - One • 2) B - Two ",
        )


if __name__ == "__main__":
    unittest.main()
