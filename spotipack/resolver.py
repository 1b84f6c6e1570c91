from __future__ import annotations
import logging
import re
from typing import Iterable, Optional

from spotipack.errors import RemoteError
from spotipack.spotify_api import SpotifyAPI

logger = logging.getLogger(__name__)

TRACK_URL_RE = re.compile(r'https?://open\.spotify\.com/(?:[\w-]+/)*track/([A-Za-z0-9]+)', re.IGNORECASE)
TRACK_URI_RE = re.compile(r'spotify:track:([A-Za-z0-9]+)', re.IGNORECASE)
BY_WORD_RE = re.compile(r'\bby\b', re.IGNORECASE)


def track_id_from_url(text: str) -> Optional[str]:
    match = TRACK_URL_RE.search(text or '')
    return match.group(1) if match else None


def uri_to_url(text: str) -> Optional[str]:
    match = TRACK_URI_RE.search(text or '')
    if not match:
        return None
    return f"https://open.spotify.com/track/{match.group(1)}"


def search_terms(text: str, aliases: Iterable[str]) -> str:
    cleaned = text or ''
    for alias in aliases:
        if alias:
            cleaned = re.sub(rf'(?<!\S){re.escape(alias)}(?!\S)', ' ', cleaned, flags=re.IGNORECASE)
    cleaned = cleaned.replace('-', ' ')
    cleaned = BY_WORD_RE.sub(' ', cleaned)
    return ' '.join(cleaned.split())


class SongResolver:
    """Turns chat text into a playable track id, or None when nothing usable matched."""

    def __init__(self, spotify: SpotifyAPI, *, aliases: Iterable[str] = (), blocked: Iterable[str] = ()):
        self.spotify = spotify
        self.aliases = [alias.lower() for alias in aliases]
        self.blocked = set(blocked)

    def is_blocked(self, track_id: str) -> bool:
        return track_id in self.blocked

    def _accept(self, track_id: Optional[str]) -> Optional[str]:
        if not track_id:
            return None
        if self.is_blocked(track_id):
            logger.info('Track %s is blocked', track_id)
            return None
        return track_id

    async def resolve(self, raw: str) -> Optional[str]:
        track_id = track_id_from_url(raw)
        if track_id:
            return self._accept(track_id)
        url = uri_to_url(raw)
        if url:
            return self._accept(track_id_from_url(url))
        query = search_terms(raw, self.aliases)
        if not query:
            return None
        try:
            item = await self.spotify.search_track(query)
        except RemoteError as exc:
            logger.error('Spotify search for "%s" failed: %s', query, exc)
            return None
        if not item:
            logger.info('No Spotify results for "%s"', query)
            return None
        return self._accept(item.get('id'))
