from __future__ import annotations
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Optional

from spotipack.config import ChannelConfig
from spotipack.eligibility import Role, roles_eligible
from spotipack.errors import Forbidden, RemoteError, ValidationFailure
from spotipack.spotify_api import SpotifyAPI, artist_names, track_uri

logger = logging.getLogger(__name__)


@dataclass
class Requester:
    name: str
    roles: FrozenSet[Role] = field(default_factory=lambda: frozenset({Role.EVERYONE}))
    identity: Optional[str] = None

    @property
    def key(self) -> str:
        return (self.identity or self.name).lower()


@dataclass
class SubmitResult:
    ok: bool
    message: str


class CooldownTracker:
    def __init__(self, duration: float, clock: Callable[[], float] = time.monotonic):
        self.duration = duration
        self._clock = clock
        self._expiry: Dict[str, float] = {}

    def is_on_cooldown(self, user: str) -> bool:
        expiry = self._expiry.get(user)
        if expiry is None:
            return False
        if self._clock() >= expiry:
            del self._expiry[user]
            return False
        return True

    def start(self, user: str) -> None:
        self._expiry[user] = self._clock() + self.duration

    def clear(self) -> None:
        self._expiry.clear()


def render_confirmation(template: str, *, username: str, track_name: str, artists: str) -> str:
    return (
        template
        .replace('$(username)', username)
        .replace('$(trackName)', track_name)
        .replace('$(artists)', artists)
    )


class QueueSubmitter:
    def __init__(
        self,
        spotify: SpotifyAPI,
        config: ChannelConfig,
        cooldown: Optional[CooldownTracker] = None,
        choose: Callable = random.choice,
    ):
        self.spotify = spotify
        self.config = config
        self.cooldown = cooldown or CooldownTracker(config.cooldown_duration)
        self._choose = choose

    def _failure(self, exc: RemoteError, track_id: str) -> SubmitResult:
        if isinstance(exc, Forbidden):
            logger.error('Spotify declined the request for %s: %s', track_id, exc.detail)
            return SubmitResult(False, self.config.message('service_declined'))
        if isinstance(exc, ValidationFailure):
            logger.info('Spotify rejected track %s: %s', track_id, exc.detail)
            return SubmitResult(False, self.config.song_not_found)
        logger.error('Failed to queue track %s: %s', track_id, exc)
        return SubmitResult(False, self.config.message('request_failed'))

    async def submit(self, track_id: str, requester: Requester) -> SubmitResult:
        if self.config.use_cooldown:
            if self.cooldown.is_on_cooldown(requester.key):
                return SubmitResult(False, self.config.message('cooldown', username=requester.name))
            self.cooldown.start(requester.key)

        try:
            track = await self.spotify.track(track_id)
        except RemoteError as exc:
            return self._failure(exc, track_id)

        track_name = track.get('name', '')
        duration = (track.get('duration_ms') or 0) / 1000
        if duration > self.config.max_duration and not roles_eligible(requester.roles, self.config.ignore_max_length):
            max_duration = self.config.max_duration
            if float(max_duration).is_integer():
                max_duration = int(max_duration)
            return SubmitResult(False, self.config.message('too_long', trackName=track_name, max_duration=max_duration))

        try:
            await self.spotify.add_to_queue(track.get('uri') or track_uri(track_id))
        except RemoteError as exc:
            return self._failure(exc, track_id)

        artists = artist_names(track)
        logger.info('%s queued %s - %s', requester.name, artists, track_name)
        template = self._choose(self.config.added_to_queue_messages)
        return SubmitResult(True, render_confirmation(
            template, username=requester.name, track_name=track_name, artists=artists,
        ))
