from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from spotipack.credentials import SpotifyCredentials
from spotipack.errors import CredentialUnavailable
from spotipack.http_client import JsonClient

logger = logging.getLogger(__name__)

SPOTIFY_API_BASE = 'https://api.spotify.com/v1'


def track_uri(track_id: str) -> str:
    return f"spotify:track:{track_id}"


def artist_names(track: Dict[str, Any]) -> str:
    return ', '.join(artist.get('name', '') for artist in track.get('artists') or [] if artist.get('name'))


class SpotifyAPI(JsonClient):
    service = 'spotify'

    def __init__(self, credentials: SpotifyCredentials, base_url: str = SPOTIFY_API_BASE):
        super().__init__(base_url)
        self.credentials = credentials

    @property
    def available(self) -> bool:
        return self.credentials.available

    async def _call(self, method: str, path: str, **kwargs: Any):
        if not self.credentials.available:
            raise CredentialUnavailable(self.service)
        # headers are read inside the lambda so a retry picks up the refreshed token
        return await self.credentials.call(
            lambda: self._req(method, path, headers=self.credentials.headers(), **kwargs)
        )

    async def currently_playing(self) -> Optional[Dict[str, Any]]:
        data = await self._call('GET', '/me/player/currently-playing')
        if not isinstance(data, dict) or not data.get('item'):
            return None
        return data

    async def player(self) -> Optional[Dict[str, Any]]:
        data = await self._call('GET', '/me/player')
        return data if isinstance(data, dict) else None

    async def queue(self) -> List[Dict[str, Any]]:
        data = await self._call('GET', '/me/player/queue')
        if not isinstance(data, dict):
            return []
        return list(data.get('queue') or [])

    async def search_track(self, query: str) -> Optional[Dict[str, Any]]:
        data = await self._call('GET', '/search', params={'q': query, 'type': 'track', 'limit': '1'})
        items = ((data or {}).get('tracks') or {}).get('items') or []
        return items[0] if items else None

    async def track(self, track_id: str) -> Dict[str, Any]:
        return await self._call('GET', f"/tracks/{track_id}")

    async def set_volume(self, percent: int) -> None:
        await self._call('PUT', '/me/player/volume', params={'volume_percent': str(percent)})

    async def add_to_queue(self, uri: str) -> None:
        await self._call('POST', '/me/player/queue', params={'uri': uri})

    async def skip(self) -> None:
        await self._call('POST', '/me/player/next')

    async def now_playing_title(self) -> Optional[str]:
        data = await self.currently_playing()
        if not data:
            return None
        item = data['item']
        return f"{artist_names(item)} - {item.get('name', '')}"
