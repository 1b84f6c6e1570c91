from __future__ import annotations
import logging
from typing import Optional

from spotipack.config import ChannelConfig
from spotipack.errors import RemoteError
from spotipack.spotify_api import SpotifyAPI, artist_names

logger = logging.getLogger(__name__)


def parse_volume(raw: str) -> Optional[int]:
    text = (raw or '').strip().rstrip('%')
    try:
        value = int(text)
    except ValueError:
        return None
    return max(0, min(100, value))


class PlayerCommands:
    """Chat-facing playback controls; every method returns the single reply to send."""

    def __init__(self, spotify: SpotifyAPI, config: ChannelConfig):
        self.spotify = spotify
        self.config = config

    async def current_volume(self, username: str) -> str:
        try:
            player = await self.spotify.player()
        except RemoteError as exc:
            logger.error('Failed to read the player state: %s', exc)
            return self.config.message('volume_failed')
        device = (player or {}).get('device') or {}
        volume = device.get('volume_percent')
        if volume is None:
            return self.config.message('nothing_playing')
        return self.config.message('volume_current', username=username, volume=volume)

    async def set_volume(self, username: str, raw: str) -> str:
        volume = parse_volume(raw)
        if volume is None:
            return self.config.message('volume_invalid', username=username)
        try:
            await self.spotify.set_volume(volume)
        except RemoteError as exc:
            logger.error('Failed to set the volume to %s: %s', volume, exc)
            return self.config.message('volume_failed')
        return self.config.message('volume_set', username=username, volume=volume)

    async def current_track_name(self) -> Optional[str]:
        data = await self.spotify.currently_playing()
        if not data:
            return None
        return data['item'].get('name')

    async def skip_current(self) -> Optional[str]:
        track = await self.current_track_name()
        await self.spotify.skip()
        logger.info('Skipped %s', track or 'the current song')
        return track

    async def skip(self, username: str) -> str:
        try:
            track = await self.skip_current()
        except RemoteError as exc:
            logger.error('Failed to skip the current song: %s', exc)
            return self.config.message('skip_failed')
        return self.config.message('skipped', username=username, track=track or 'the current song')

    async def track_name(self) -> str:
        try:
            data = await self.spotify.currently_playing()
        except RemoteError as exc:
            logger.error('Failed to fetch the current song: %s', exc)
            return self.config.message('nothing_playing')
        if not data:
            return self.config.message('nothing_playing')
        item = data['item']
        link = (item.get('external_urls') or {}).get('spotify', '')
        return self.config.message(
            'now_playing', artists=artist_names(item), trackName=item.get('name', ''), link=link,
        )

    async def queue_peek(self) -> str:
        try:
            queue = await self.spotify.queue()
        except RemoteError as exc:
            logger.error('Failed to fetch the queue: %s', exc)
            return self.config.message('queue_empty')
        upcoming = queue[:self.config.queue_display_depth]
        if not upcoming:
            return self.config.message('queue_empty')
        entries = ''.join(
            self.config.message(
                'queue_entry',
                index=index,
                artist=(item.get('artists') or [{}])[0].get('name', ''),
                trackName=item.get('name', ''),
            )
            for index, item in enumerate(upcoming, start=1)
        )
        return self.config.message('queue_header', depth=len(upcoming), entries=entries)
