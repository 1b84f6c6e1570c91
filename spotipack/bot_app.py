from __future__ import annotations
import asyncio
import logging
import re
from collections import deque
from functools import partial
from typing import Deque, Dict, List, Optional, Tuple

import aiohttp
from twitchio import eventsub
from twitchio.ext import commands
from twitchio.payloads import TokenRefreshedPayload

from spotipack.config import (
    BITS_USAGE,
    CHANNEL_POINTS_USAGE,
    COMMAND_USAGE,
    ChannelConfig,
    Secrets,
    load_config,
)
from spotipack.credentials import SpotifyCredentials, TwitchCredentials
from spotipack.dispatcher import ChatEvent, CheerEvent, CommandDispatcher, RedemptionEvent
from spotipack.eligibility import ChatterTags
from spotipack.errors import RemoteError
from spotipack.oauth_server import LocalServer, create_overlay_app
from spotipack.player import PlayerCommands
from spotipack.redemptions import RedemptionSettler
from spotipack.resolver import SongResolver
from spotipack.spotify_api import SpotifyAPI
from spotipack.submitter import QueueSubmitter
from spotipack.twitch_api import TwitchAPI
from spotipack.voteskip import VoteSkipAggregator

logger = logging.getLogger(__name__)

VERSION = '2.0.0'
UPDATE_URL = 'https://api.github.com/repos/Kruxiz/TwitchBot2.0/releases/latest'
TWITCH_TOKEN_FILE = 'twitch_token.json'
SPOTIFY_TOKEN_FILE = 'spotify_token.json'
CLIP_URL = 'https://clips.twitch.tv/{clip_id}'

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'
NOISY_LOGGERS = ('twitchio.http', 'aiohttp.access', 'uvicorn', 'uvicorn.error', 'uvicorn.access')


def setup_logging(config: ChannelConfig) -> None:
    if config.log_level:
        level = getattr(logging, config.log_level.upper(), logging.INFO)
    else:
        level = logging.INFO if config.logs else logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def version_tuple(value: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r'\d+', value or ''))


async def check_for_updates(
    session: Optional[aiohttp.ClientSession] = None,
    *,
    current: str = VERSION,
    url: str = UPDATE_URL,
) -> Optional[str]:
    owns_session = session is None
    if owns_session:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
    try:
        async with session.get(url) as resp:
            if resp.status != 200:
                logger.info('Failed to check for updates.')
                return None
            data = await resp.json()
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
        logger.info('Failed to check for updates.')
        return None
    finally:
        if owns_session:
            await session.close()
    tag = (data or {}).get('tag_name') or ''
    if version_tuple(tag) > version_tuple(current):
        release_url = data.get('html_url')
        logger.warning('An update is available at %s', release_url)
        return release_url
    return None


def chatter_tags(chatter) -> ChatterTags:
    badges: Dict[str, str] = {}
    for badge in getattr(chatter, 'badges', None) or []:
        set_id = getattr(badge, 'set_id', None)
        if set_id:
            badges[set_id] = str(getattr(badge, 'id', '1'))
    return ChatterTags(
        username=(getattr(chatter, 'name', None) or '').lower(),
        display_name=getattr(chatter, 'display_name', None),
        user_id=str(chatter.id) if getattr(chatter, 'id', None) else None,
        badges=badges,
        mod=bool(getattr(chatter, 'moderator', False)),
    )


def anonymous_tags() -> ChatterTags:
    return ChatterTags(username='anonymous', display_name='Anonymous')


async def create_clip_url(twitch_api: TwitchAPI, broadcaster_id: Optional[str]) -> Optional[str]:
    if not broadcaster_id:
        return None
    try:
        clip = await twitch_api.create_clip(broadcaster_id)
    except RemoteError as exc:
        logger.error('Error creating clip: %s', exc)
        return None
    if not clip or not clip.get('id'):
        return None
    return CLIP_URL.format(clip_id=clip['id'])


def build_dispatcher(
    config: ChannelConfig,
    *,
    send,
    twitch_api: TwitchAPI,
    spotify_api: SpotifyAPI,
    twitch_credentials: TwitchCredentials,
    broadcaster_id: Optional[str],
    reward_id: Optional[str],
) -> CommandDispatcher:
    player = PlayerCommands(spotify_api, config)
    voteskip = VoteSkipAggregator(
        config.required_vote_skip,
        config.voteskip_timeout,
        send,
        player.skip_current,
        progress_message=config.template('voteskip_progress'),
        done_message=config.template('voteskip_done'),
        timeout_message=config.template('voteskip_timeout'),
    )
    bot_login = config.user_name.lower()
    return CommandDispatcher(
        config,
        send=send,
        resolver=SongResolver(spotify_api, aliases=config.command_alias, blocked=config.blocked_tracks),
        submitter=QueueSubmitter(spotify_api, config),
        player=player,
        voteskip=voteskip,
        settler=RedemptionSettler(
            twitch_api, twitch_credentials, broadcaster_id=broadcaster_id, reward_id=reward_id,
        ),
        playback_available=lambda: spotify_api.available,
        clip=partial(create_clip_url, twitch_api, broadcaster_id),
        # A bot sharing the streamer's account must still obey the streamer.
        bot_login=None if bot_login == config.channel_login else bot_login,
    )


class SpotipackBot(commands.Bot):
    def __init__(
        self,
        *,
        config: ChannelConfig,
        credentials: TwitchCredentials,
        client_id: str,
        client_secret: str,
        bot_id: str,
        broadcaster_id: str,
    ):
        if not credentials.access_token or not bot_id or not broadcaster_id:
            raise RuntimeError('token, bot_id, and broadcaster_id are required')
        super().__init__(
            client_id=client_id,
            client_secret=client_secret,
            bot_id=str(bot_id),
            prefix='!',
            fetch_client_user=False,
        )
        self.config = config
        self.credentials = credentials
        self.bot_user_id = str(bot_id)
        self.broadcaster_id = str(broadcaster_id)
        self.dispatcher: Optional[CommandDispatcher] = None
        self.ready_event = asyncio.Event()
        self._subscribed = False
        self._sent: Deque[str] = deque(maxlen=20)

    async def load_tokens(self, path: Optional[str] = None) -> None:
        payload = await super().add_token(self.credentials.access_token, self.credentials.refresh_token)
        logger.info('Twitch token added for %s', getattr(payload, 'login', None) or self.bot_user_id)

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Tokens are persisted by TwitchCredentials.
        return None

    async def event_token_refreshed(self, payload: TokenRefreshedPayload) -> None:
        if str(payload.user_id) != self.bot_user_id:
            return
        self.credentials.adopt(payload.token, payload.refresh_token, list(payload.scopes))

    async def event_ready(self) -> None:
        await self.subscribe_channel()
        self.ready_event.set()
        logger.info('Connected to %s as %s', self.config.channel_login, self.bot_user_id)

    def _subscriptions(self) -> List[Tuple[object, Dict[str, object]]]:
        usage = self.config.usage_types
        subs: List[Tuple[object, Dict[str, object]]] = [(
            eventsub.ChatMessageSubscription(broadcaster_user_id=self.broadcaster_id, user_id=self.bot_user_id),
            {'as_bot': True},
        )]
        if CHANNEL_POINTS_USAGE in usage:
            subs.append((
                eventsub.ChannelPointsRedeemAddSubscription(broadcaster_user_id=self.broadcaster_id),
                {'token_for': self.broadcaster_id},
            ))
        if BITS_USAGE in usage:
            subs.append((
                eventsub.ChannelCheerSubscription(broadcaster_user_id=self.broadcaster_id),
                {'token_for': self.broadcaster_id},
            ))
        return subs

    async def subscribe_channel(self) -> None:
        if self._subscribed:
            return
        for payload, options in self._subscriptions():
            try:
                await self.subscribe_websocket(payload=payload, **options)
            except Exception:
                logger.exception('Failed to subscribe to %s', type(payload).__name__)
        self._subscribed = True

    async def send_chat(self, message: str) -> None:
        if not message:
            return
        try:
            partial_user = self.create_partialuser(self.broadcaster_id, self.config.channel_login)
            self._sent.append(message)
            await partial_user.send_message(
                message,
                sender=self.bot_user_id,
                token_for=self.bot_user_id,
            )
            logger.info('%s', message)
        except Exception:
            logger.exception('Failed to send message to %s', self.config.channel_login)

    def _is_echo(self, chatter_id: Optional[str], text: str) -> bool:
        if chatter_id != self.bot_user_id:
            return False
        if text in self._sent:
            self._sent.remove(text)
            return True
        return False

    async def event_message(self, message) -> None:
        if self.dispatcher is None:
            return
        text = message.text or ''
        chatter = message.chatter
        if self._is_echo(str(getattr(chatter, 'id', '') or ''), text):
            return
        await self.dispatcher.handle_chat(ChatEvent(text=text, tags=chatter_tags(chatter)))

    async def event_custom_redemption_add(self, payload) -> None:
        if self.dispatcher is None:
            return
        await self.dispatcher.handle_redemption(RedemptionEvent(
            reward_id=str(payload.reward.id),
            user_input=payload.user_input or '',
            tags=chatter_tags(payload.user),
        ))

    async def event_cheer(self, payload) -> None:
        if self.dispatcher is None:
            return
        user = getattr(payload, 'user', None)
        tags = anonymous_tags() if getattr(payload, 'anonymous', False) or user is None else chatter_tags(user)
        await self.dispatcher.handle_cheer(CheerEvent(bits=int(payload.bits or 0), text=payload.message or '', tags=tags))


async def resolve_reward(
    config: ChannelConfig,
    twitch_api: TwitchAPI,
    credentials: TwitchCredentials,
    broadcaster_id: str,
) -> Optional[str]:
    if CHANNEL_POINTS_USAGE not in config.usage_types:
        return config.custom_reward_id
    if credentials.degraded:
        logger.warning('Missing %s scope; channel point refunds are disabled.', 'channel:manage:redemptions')
        return config.custom_reward_id
    return await twitch_api.ensure_reward(
        broadcaster_id,
        config.custom_reward_name,
        config.custom_reward_cost,
        reward_id=config.custom_reward_id,
    )


async def main(config_path: Optional[str] = None) -> None:
    config = load_config(config_path)
    setup_logging(config)
    secrets = Secrets.from_env()
    missing = secrets.missing_twitch()
    if missing:
        raise SystemExit(f"Missing environment variables: {', '.join(missing)}")
    if COMMAND_USAGE not in config.usage_types and CHANNEL_POINTS_USAGE not in config.usage_types and BITS_USAGE not in config.usage_types:
        logger.warning('No usage types enabled; song requests are disabled.')

    await check_for_updates()

    token_dir = config.token_dir
    twitch_credentials = TwitchCredentials(
        secrets.twitch_client_id, secrets.twitch_client_secret, token_dir / TWITCH_TOKEN_FILE,
    )
    spotify_credentials = SpotifyCredentials(
        secrets.spotify_client_id, secrets.spotify_client_secret, token_dir / SPOTIFY_TOKEN_FILE,
        port=config.express_port,
    )
    twitch_api = TwitchAPI(twitch_credentials)
    spotify_api = SpotifyAPI(spotify_credentials)
    overlay: Optional[LocalServer] = None
    try:
        await twitch_credentials.bootstrap()
        if secrets.spotify_configured:
            await spotify_credentials.bootstrap()
        else:
            logger.warning('SPOTIFY_CLIENT_ID/SPOTIFY_CLIENT_SECRET not set; playback commands are disabled.')

        try:
            broadcaster_id = await twitch_api.get_broadcaster_id(config.channel_login)
        except RemoteError as exc:
            raise SystemExit(f'Unable to look up channel {config.channel_login}: {exc}')
        if not broadcaster_id:
            raise SystemExit(f'Channel {config.channel_login} was not found on Twitch')
        reward_id = await resolve_reward(config, twitch_api, twitch_credentials, broadcaster_id)

        bot = SpotipackBot(
            config=config,
            credentials=twitch_credentials,
            client_id=secrets.twitch_client_id,
            client_secret=secrets.twitch_client_secret,
            bot_id=secrets.bot_user_id or twitch_credentials.user_id or broadcaster_id,
            broadcaster_id=broadcaster_id,
        )
        bot.dispatcher = build_dispatcher(
            config,
            send=bot.send_chat,
            twitch_api=twitch_api,
            spotify_api=spotify_api,
            twitch_credentials=twitch_credentials,
            broadcaster_id=broadcaster_id,
            reward_id=reward_id,
        )
        if config.now_playing_overlay:
            overlay = LocalServer(create_overlay_app(spotify_api.now_playing_title), port=config.express_port)
            overlay.start()
            logger.info('Now playing overlay at http://localhost:%s/now-playing', config.express_port)

        twitch_credentials.start_validation_loop()
        await bot.start(with_adapter=False)
    finally:
        await twitch_credentials.stop_validation_loop()
        if overlay is not None:
            await overlay.stop()
        for client in (twitch_api, spotify_api, twitch_credentials, spotify_credentials):
            await client.close()


def run() -> None:
    asyncio.run(main())


if __name__ == '__main__':
    run()
