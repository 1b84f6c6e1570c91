from __future__ import annotations
import asyncio
import logging
from typing import Awaitable, Callable, FrozenSet, Optional, Set

from spotipack.errors import RemoteError

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS = '{username} voted to skip the current song ({count}/{required})!'
DEFAULT_DONE = 'Chat has skipped {track} ({required}/{required})!'
DEFAULT_TIMEOUT = 'Voteskip has timed out... No song will be skipped at this time!'


class VoteSkipAggregator:
    """Collects distinct voters toward a skip threshold.

    Every accepted vote restarts the timeout. Reaching the threshold or the
    timeout firing both clear the pool; only the former skips. Mutations of the
    voter set and the timer happen before any await, so two votes landing at
    once can never both trigger a skip or leave two timers running.
    """

    def __init__(
        self,
        threshold: int,
        timeout: float,
        send: Callable[[str], Awaitable[None]],
        on_skip: Callable[[], Awaitable[Optional[str]]],
        *,
        progress_message: str = DEFAULT_PROGRESS,
        done_message: str = DEFAULT_DONE,
        timeout_message: str = DEFAULT_TIMEOUT,
    ):
        self.threshold = max(1, int(threshold))
        self.timeout = timeout
        self._send = send
        self._on_skip = on_skip
        self.progress_message = progress_message
        self.done_message = done_message
        self.timeout_message = timeout_message
        self._voters: Set[str] = set()
        self._timer: Optional[asyncio.Task] = None

    @property
    def size(self) -> int:
        return len(self._voters)

    @property
    def voters(self) -> FrozenSet[str]:
        return frozenset(self._voters)

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    def reset(self) -> None:
        self._voters.clear()
        self._cancel_timer()

    async def add_vote(self, user: str) -> bool:
        voter = (user or '').lower()
        if not voter or voter in self._voters:
            return False
        self._voters.add(voter)
        count = len(self._voters)
        progress = self.progress_message.format(username=user, count=count, required=self.threshold)
        if count >= self.threshold:
            self.reset()
            await self._send(progress)
            await self._skip()
            return True
        self._cancel_timer()
        self._timer = asyncio.create_task(self._expire())
        await self._send(progress)
        return True

    async def _skip(self) -> None:
        try:
            track = await self._on_skip()
        except RemoteError as exc:
            logger.error('vote skip failed: %s', exc)
            return
        await self._send(self.done_message.format(track=track or 'the current song', required=self.threshold))

    async def _expire(self) -> None:
        await asyncio.sleep(self.timeout)
        if self._timer is not asyncio.current_task():
            return
        self._timer = None
        self._voters.clear()
        logger.info('vote skip timed out')
        await self._send(self.timeout_message)
