from __future__ import annotations
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from spotipack.eligibility import Role

CONFIG_PATH = Path(os.getenv('SPOTIPACK_CONFIG', 'spotipack_config.yaml'))

CHANNEL_POINTS_USAGE = 'channel_points'
COMMAND_USAGE = 'command'
BITS_USAGE = 'bits'

DEFAULT_MESSAGES: Dict[str, str] = {
    'usage_hint': '{username}, usage: !songrequest song-link (Spotify -> Share -> Copy Song Link)',
    'cooldown': '{username}, Please wait before requesting another song.',
    'too_long': '{trackName} is too long. The max duration is {max_duration} seconds',
    'service_declined': "It looks like Spotify doesn't want you to use it for some reason. Check the console for details.",
    'request_failed': 'There was a problem adding your song to the queue.',
    'playback_unavailable': 'Song requests are unavailable right now, Spotify is not connected.',
    'volume_current': '{username}, the current volume is {volume}!',
    'volume_set': '{username} has set the current volume to {volume}!',
    'volume_invalid': '{username}, a number between 0 and 100 is required.',
    'volume_failed': 'There was a problem setting the volume',
    'skipped': '{username} skipped {track}!',
    'skip_failed': 'There was a problem skipping the song',
    'now_playing': '▶️ {artists} - {trackName} -> {link}',
    'nothing_playing': 'Seems like no music is playing right now',
    'queue_header': '▶️ Next {depth} songs: {entries}',
    'queue_entry': '• {index}) {artist} - {trackName} ',
    'queue_empty': 'Nothing in the queue.',
    'voteskip_progress': '{username} voted to skip the current song ({count}/{required})!',
    'voteskip_done': 'Chat has skipped {track} ({required}/{required})!',
    'voteskip_timeout': 'Voteskip has timed out... No song will be skipped at this time!',
    'clip_failed': 'There was a problem creating the clip',
}

DEFAULT_CONFIRMATIONS = [
    '$(username), $(trackName) by $(artists) has been added to the queue!',
]


class ChannelConfig(BaseModel):
    channel_name: str
    user_name: str
    usage_types: List[str] = Field(default_factory=lambda: [COMMAND_USAGE])

    command_alias: List[str] = Field(default_factory=lambda: ['!songrequest', '!sr'])
    skip_alias: str = '!skip'
    volume_alias: str = '!volume'
    song_alias: str = '!song'
    queue_alias: str = '!queue'
    voteskip_alias: str = '!voteskip'
    clip_alias: str = '!clip'

    command_user_level: List[Role] = Field(default_factory=lambda: [Role.EVERYONE])
    volume_set_level: List[Role] = Field(default_factory=lambda: [Role.STREAMER, Role.MOD])
    skip_user_level: List[Role] = Field(default_factory=lambda: [Role.STREAMER, Role.MOD])
    clip_user_level: List[Role] = Field(default_factory=lambda: [Role.STREAMER, Role.MOD, Role.VIP])
    ignore_max_length: List[Role] = Field(default_factory=lambda: [Role.STREAMER])

    use_song_command: bool = True
    use_queue_command: bool = True
    allow_vote_skip: bool = True
    required_vote_skip: int = Field(default=5, ge=1)
    voteskip_timeout: float = Field(default=120, gt=0)

    use_cooldown: bool = False
    cooldown_duration: float = Field(default=300, ge=0)
    max_duration: float = Field(default=600, gt=0)
    blocked_tracks: List[str] = Field(default_factory=list)

    custom_reward_id: Optional[str] = None
    custom_reward_name: str = 'Song Request'
    custom_reward_cost: int = Field(default=1000, ge=1)
    minimum_required_bits: int = Field(default=100, ge=1)

    added_to_queue_messages: List[str] = Field(default_factory=lambda: list(DEFAULT_CONFIRMATIONS))
    song_not_found: str = 'That song could not be found.'
    queue_display_depth: int = Field(default=5, ge=1)

    express_port: int = 8888
    now_playing_overlay: bool = False
    token_dir: Path = Path('.')
    logs: bool = True
    log_level: Optional[str] = None
    messages: Dict[str, str] = Field(default_factory=dict)

    @field_validator(
        'command_user_level',
        'volume_set_level',
        'skip_user_level',
        'clip_user_level',
        'ignore_max_length',
        mode='before',
    )
    @classmethod
    def _normalize_roles(cls, value: object) -> object:
        if isinstance(value, str):
            value = [value]
        if isinstance(value, list):
            return [item.strip().lower() if isinstance(item, str) else item for item in value]
        return value

    @field_validator('command_alias', 'usage_types', mode='before')
    @classmethod
    def _normalize_aliases(cls, value: object) -> object:
        if isinstance(value, str):
            value = [value]
        if isinstance(value, list):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return value

    @field_validator(
        'skip_alias', 'volume_alias', 'song_alias', 'queue_alias', 'voteskip_alias', 'clip_alias',
    )
    @classmethod
    def _lower_alias(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator('blocked_tracks', mode='before')
    @classmethod
    def _coerce_blocked(cls, value: object) -> object:
        if value is None:
            return []
        return value

    @field_validator('added_to_queue_messages')
    @classmethod
    def _require_templates(cls, value: List[str]) -> List[str]:
        return value or list(DEFAULT_CONFIRMATIONS)

    @property
    def channel_login(self) -> str:
        return self.channel_name.lstrip('#').lower()

    def template(self, key: str) -> str:
        return self.messages.get(key) or DEFAULT_MESSAGES[key]

    def message(self, key: str, **params: object) -> str:
        template = self.template(key)
        try:
            return template.format(**params)
        except (KeyError, IndexError):
            return template


@dataclass
class Secrets:
    twitch_client_id: Optional[str]
    twitch_client_secret: Optional[str]
    spotify_client_id: Optional[str]
    spotify_client_secret: Optional[str]
    bot_user_id: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> 'Secrets':
        env = os.environ if environ is None else environ
        return cls(
            twitch_client_id=env.get('TWITCH_CLIENT_ID') or None,
            twitch_client_secret=env.get('TWITCH_CLIENT_SECRET') or None,
            spotify_client_id=env.get('SPOTIFY_CLIENT_ID') or None,
            spotify_client_secret=env.get('SPOTIFY_CLIENT_SECRET') or None,
            bot_user_id=env.get('TWITCH_BOT_USER_ID') or env.get('BOT_USER_ID') or None,
        )

    def missing_twitch(self) -> List[str]:
        missing: List[str] = []
        if not self.twitch_client_id:
            missing.append('TWITCH_CLIENT_ID')
        if not self.twitch_client_secret:
            missing.append('TWITCH_CLIENT_SECRET')
        return missing

    @property
    def spotify_configured(self) -> bool:
        return bool(self.spotify_client_id and self.spotify_client_secret)


def load_config(path: Union[str, Path, None] = None) -> ChannelConfig:
    config_path = Path(path) if path is not None else CONFIG_PATH
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise SystemExit(f'{config_path} not found. Copy spotipack_config.example.yaml and fill in your channel.')
    if not isinstance(data, dict):
        raise SystemExit(f'{config_path} must contain a mapping of options')
    try:
        return ChannelConfig.model_validate(data)
    except ValidationError as exc:
        raise SystemExit(f'Invalid configuration in {config_path}:\n{exc}')
