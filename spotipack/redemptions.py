from __future__ import annotations
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Optional

from spotipack.credentials import TwitchCredentials
from spotipack.errors import RemoteError
from spotipack.twitch_api import TwitchAPI

logger = logging.getLogger(__name__)

STALE_AFTER_SECONDS = 60
FULFILLED = 'FULFILLED'
CANCELED = 'CANCELED'

_FRACTION_RE = re.compile(r'\.(\d+)')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    # Twitch sends nanosecond precision; fromisoformat accepts at most microseconds.
    text = _FRACTION_RE.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RedemptionSettler:
    def __init__(
        self,
        twitch: TwitchAPI,
        credentials: TwitchCredentials,
        *,
        broadcaster_id: Optional[str] = None,
        reward_id: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.twitch = twitch
        self.credentials = credentials
        self.broadcaster_id = broadcaster_id
        self.reward_id = reward_id
        self._clock = clock

    async def fulfill(self) -> bool:
        return await self._settle(FULFILLED)

    async def refund(self) -> bool:
        return await self._settle(CANCELED)

    async def _settle(self, status: str) -> bool:
        if self.credentials.degraded:
            logger.warning('Redemption management is unavailable; not marking the redemption %s', status)
            return False
        if not self.broadcaster_id or not self.reward_id:
            logger.warning('No custom reward configured; cannot mark the redemption %s', status)
            return False
        try:
            redemptions = await self.twitch.get_redemptions(self.broadcaster_id, self.reward_id)
        except RemoteError as exc:
            logger.error('Failed to fetch redemptions: %s', exc)
            return False
        if not redemptions:
            logger.warning(
                'No unfulfilled redemption found. Make sure "Skip redemption requests queue" is '
                'disabled on the reward so requests can be %s.',
                'fulfilled' if status == FULFILLED else 'refunded',
            )
            return False
        redemption = redemptions[0]
        redeemed_at = parse_timestamp(redemption.get('redeemed_at') or '')
        if redeemed_at is None or (self._clock() - redeemed_at).total_seconds() > STALE_AFTER_SECONDS:
            logger.warning('Newest redemption %s is too old to settle', redemption.get('id'))
            return False
        try:
            await self.twitch.update_redemption_status(
                self.broadcaster_id, self.reward_id, redemption['id'], status,
            )
        except RemoteError as exc:
            logger.error('Failed to mark redemption %s %s: %s', redemption.get('id'), status, exc)
            return False
        logger.info('Redemption %s marked %s', redemption.get('id'), status)
        return True
