from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple

from spotipack.config import BITS_USAGE, CHANNEL_POINTS_USAGE, COMMAND_USAGE, ChannelConfig
from spotipack.eligibility import ChatterTags, Role, resolve_roles, roles_eligible
from spotipack.player import PlayerCommands
from spotipack.redemptions import RedemptionSettler
from spotipack.resolver import SongResolver
from spotipack.submitter import QueueSubmitter, Requester
from spotipack.voteskip import VoteSkipAggregator

logger = logging.getLogger(__name__)

# Twitch's global cheermote prefixes; a token only counts as a cheermote when
# one of these is followed directly by the bit amount.
CHEERMOTE_PREFIXES = (
    'Cheer', 'DoodleCheer', 'BibleThump', 'cheerwhal', 'Corgo', 'Scoops', 'uni',
    'ShowLove', 'Party', 'SeemsGood', 'Pride', 'Kappa', 'FrankerZ', 'HeyGuys',
    'DansGame', 'EleGiggle', 'TriHard', 'Kreygasm', '4Head', 'SwiftRage',
    'NotLikeThis', 'FailFish', 'VoHiYo', 'PJSalt', 'MrDestructoid', 'bday',
    'RIPCheer', 'Shamrock', 'BitBoss', 'Streamlabs', 'Muxy', 'HolidayCheer',
    'Goal', 'Anon', 'Charity',
)
CHEERMOTE_RE = re.compile(
    r'(?<!\S)(?:' + '|'.join(re.escape(prefix) for prefix in CHEERMOTE_PREFIXES) + r')\d+(?!\S)',
    re.IGNORECASE,
)

SendFn = Callable[[str], Awaitable[None]]


@dataclass
class ChatEvent:
    text: str
    tags: ChatterTags


@dataclass
class RedemptionEvent:
    reward_id: str
    user_input: str
    tags: ChatterTags


@dataclass
class CheerEvent:
    bits: int
    text: str
    tags: ChatterTags


def strip_cheermotes(text: str) -> str:
    return ' '.join(CHEERMOTE_RE.sub(' ', text or '').split())


Handler = Callable[[ChatterTags, FrozenSet[Role], List[str]], Awaitable[None]]


class CommandDispatcher:
    """Routes chat messages, redemptions and cheers to the matching action."""

    def __init__(
        self,
        config: ChannelConfig,
        *,
        send: SendFn,
        resolver: SongResolver,
        submitter: QueueSubmitter,
        player: PlayerCommands,
        voteskip: VoteSkipAggregator,
        settler: RedemptionSettler,
        playback_available: Callable[[], bool],
        clip: Optional[Callable[[], Awaitable[Optional[str]]]] = None,
        bot_login: Optional[str] = None,
    ):
        self.config = config
        self.send = send
        self.resolver = resolver
        self.submitter = submitter
        self.player = player
        self.voteskip = voteskip
        self.settler = settler
        self.playback_available = playback_available
        self.clip = clip
        self.bot_login = (bot_login or '').lower() or None
        self.handlers = self._build_table()

    def _build_table(self) -> Dict[str, Tuple[Handler, bool]]:
        # alias -> (handler, needs playback)
        config = self.config
        table: Dict[str, Tuple[Handler, bool]] = {
            config.volume_alias: (self._volume, True),
            config.skip_alias: (self._skip, True),
        }
        if config.use_song_command:
            table[config.song_alias] = (self._song, True)
        if config.use_queue_command:
            table[config.queue_alias] = (self._queue, True)
        if config.allow_vote_skip:
            table[config.voteskip_alias] = (self._voteskip, True)
        if self.clip is not None:
            table[config.clip_alias] = (self._clip, False)
        return table

    def _is_self(self, tags: ChatterTags) -> bool:
        return self.bot_login is not None and (tags.username or '').lower() == self.bot_login

    async def handle_chat(self, event: ChatEvent) -> None:
        if self._is_self(event.tags):
            return
        text = (event.text or '').strip()
        tokens = text.lower().split()
        if not tokens:
            return
        command, args = tokens[0], tokens[1:]
        tags = event.tags
        roles = resolve_roles(self.config.channel_name, tags)

        if (
            COMMAND_USAGE in self.config.usage_types
            and command in self.config.command_alias
            and roles_eligible(roles, self.config.command_user_level)
        ):
            if not args:
                await self.send(self.config.message('usage_hint', username=tags.label))
                return
            # Track ids are case sensitive, so the request keeps its original casing.
            request = text.split(maxsplit=1)[1]
            await self.song_request(request, tags, roles)
            return

        entry = self.handlers.get(command)
        if entry is None:
            return
        handler, needs_playback = entry
        if needs_playback and not self.playback_available():
            logger.debug('ignoring %s while Spotify is unavailable', command)
            return
        await handler(tags, roles, args)

    async def song_request(self, text: str, tags: ChatterTags, roles: Optional[FrozenSet[Role]] = None) -> bool:
        if roles is None:
            roles = resolve_roles(self.config.channel_name, tags)
        if not self.playback_available():
            await self.send(self.config.message('playback_unavailable'))
            return False
        track_id = await self.resolver.resolve(text)
        if not track_id:
            await self.send(self.config.song_not_found)
            return False
        requester = Requester(name=tags.label, roles=roles, identity=tags.user_id or tags.username)
        result = await self.submitter.submit(track_id, requester)
        await self.send(result.message)
        return result.ok

    async def handle_redemption(self, event: RedemptionEvent) -> None:
        logger.info('Reward ID: %s', event.reward_id)
        if CHANNEL_POINTS_USAGE not in self.config.usage_types:
            return
        if not self.settler.reward_id or event.reward_id != self.settler.reward_id:
            return
        username = event.tags.label
        if await self.song_request(event.user_input or '', event.tags):
            if await self.settler.fulfill():
                logger.info('%s Redemption fulfilled successfully for reward ID %s', username, event.reward_id)
            else:
                logger.info('%s Redemption failed to fulfill for reward ID %s', username, event.reward_id)
        elif await self.settler.refund():
            logger.info("%s redeemed a song request that couldn't be completed. It was refunded automatically.", username)
        else:
            logger.info("%s redeemed a song request that couldn't be completed. It could not be refunded automatically.", username)

    async def handle_cheer(self, event: CheerEvent) -> bool:
        if BITS_USAGE not in self.config.usage_types:
            return False
        if event.bits < self.config.minimum_required_bits:
            return False
        request = strip_cheermotes(event.text)
        if not request:
            return False
        logger.info('%s cheered %s bits for a song request', event.tags.label, event.bits)
        return await self.song_request(request, event.tags)

    # ---- built-ins ----
    async def _volume(self, tags: ChatterTags, roles: FrozenSet[Role], args: List[str]) -> None:
        if not roles_eligible(roles, self.config.volume_set_level):
            return
        if not args:
            await self.send(await self.player.current_volume(tags.label))
        else:
            await self.send(await self.player.set_volume(tags.label, args[0]))

    async def _skip(self, tags: ChatterTags, roles: FrozenSet[Role], args: List[str]) -> None:
        if not roles_eligible(roles, self.config.skip_user_level):
            return
        await self.send(await self.player.skip(tags.label))

    async def _song(self, tags: ChatterTags, roles: FrozenSet[Role], args: List[str]) -> None:
        await self.send(await self.player.track_name())

    async def _queue(self, tags: ChatterTags, roles: FrozenSet[Role], args: List[str]) -> None:
        await self.send(await self.player.queue_peek())

    async def _voteskip(self, tags: ChatterTags, roles: FrozenSet[Role], args: List[str]) -> None:
        await self.voteskip.add_vote(tags.label)

    async def _clip(self, tags: ChatterTags, roles: FrozenSet[Role], args: List[str]) -> None:
        if not roles_eligible(roles, self.config.clip_user_level):
            return
        url = await self.clip()
        await self.send(url or self.config.message('clip_failed'))
