import asyncio
import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from spotipack.errors import TransientError
from spotipack.voteskip import VoteSkipAggregator


class VoteSkipTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.send = AsyncMock()
        self.on_skip = AsyncMock(return_value="Song")

    def _aggregator(self, threshold: int = 3, timeout: float = 5) -> VoteSkipAggregator:
        aggregator = VoteSkipAggregator(threshold, timeout, self.send, self.on_skip)
        self.addAsyncCleanup(self._reset, aggregator)
        return aggregator

    async def _reset(self, aggregator: VoteSkipAggregator) -> None:
        aggregator.reset()

    async def test_threshold_skips_once_and_clears(self) -> None:
        aggregator = self._aggregator()

        await aggregator.add_vote("A")
        await aggregator.add_vote("A")
        await aggregator.add_vote("B")
        self.assertEqual(aggregator.size, 2)
        self.assertTrue(aggregator.timer_pending)
        await aggregator.add_vote("C")

        self.on_skip.assert_awaited_once()
        self.assertEqual(aggregator.size, 0)
        self.assertFalse(aggregator.timer_pending)
        self.assertEqual(
            [call.args[0] for call in self.send.await_args_list],
            [
                "A voted to skip the current song (1/3)!",
                "B voted to skip the current song (2/3)!",
                "C voted to skip the current song (3/3)!",
                "Chat has skipped Song (3/3)!",
            ],
        )

    async def test_duplicate_vote_is_noop(self) -> None:
        aggregator = self._aggregator()

        self.assertTrue(await aggregator.add_vote("A"))
        self.assertFalse(await aggregator.add_vote("a"))

        self.assertEqual(aggregator.voters, frozenset({"a"}))
        self.assertEqual(self.send.await_count, 1)

    async def test_timeout_clears_without_skipping(self) -> None:
        aggregator = self._aggregator(timeout=0.05)

        await aggregator.add_vote("A")
        await aggregator.add_vote("B")
        await asyncio.sleep(0.2)

        self.on_skip.assert_not_awaited()
        self.assertEqual(aggregator.size, 0)
        self.assertEqual(
            self.send.await_args_list[-1].args[0],
            "Voteskip has timed out... No song will be skipped at this time!",
        )

    async def test_each_vote_restarts_the_timer(self) -> None:
        aggregator = self._aggregator(timeout=0.3)

        await aggregator.add_vote("A")
        first_timer = aggregator._timer
        await asyncio.sleep(0.2)
        await aggregator.add_vote("B")
        await asyncio.sleep(0)

        self.assertTrue(first_timer.cancelled())
        await asyncio.sleep(0.2)
        self.assertEqual(aggregator.size, 2)
        await asyncio.sleep(0.3)
        self.assertEqual(aggregator.size, 0)

    async def test_each_threshold_crossing_skips_once(self) -> None:
        aggregator = self._aggregator(threshold=2)

        await asyncio.gather(*(aggregator.add_vote(name) for name in ["A", "B", "C", "D"]))

        self.assertEqual(self.on_skip.await_count, 2)
        self.assertFalse(aggregator.timer_pending)

    async def test_failed_skip_is_logged(self) -> None:
        self.on_skip.side_effect = TransientError(500, "down")
        aggregator = self._aggregator(threshold=1)

        with self.assertLogs("spotipack.voteskip", level="ERROR"):
            await aggregator.add_vote("A")

        self.assertEqual(aggregator.size, 0)
        self.send.assert_awaited_once_with("A voted to skip the current song (1/1)!")

    async def test_final_vote_is_announced_before_the_skip(self) -> None:
        order = []
        self.send.side_effect = lambda message: order.append(message)
        self.on_skip.side_effect = lambda: order.append("skip") or "Song"
        aggregator = self._aggregator(threshold=2)

        await aggregator.add_vote("A")
        await aggregator.add_vote("B")

        self.assertEqual(order, [
            "A voted to skip the current song (1/2)!",
            "B voted to skip the current song (2/2)!",
            "skip",
            "Chat has skipped Song (2/2)!",
        ])


if __name__ == "__main__":
    unittest.main()
