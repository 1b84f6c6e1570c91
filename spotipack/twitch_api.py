from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from spotipack.credentials import TwitchCredentials
from spotipack.errors import CredentialUnavailable, Forbidden
from spotipack.http_client import JsonClient

logger = logging.getLogger(__name__)

HELIX_BASE = 'https://api.twitch.tv/helix'

REWARDS_PATH = '/channel_points/custom_rewards'
REDEMPTIONS_PATH = '/channel_points/custom_rewards/redemptions'


class TwitchAPI(JsonClient):
    service = 'twitch'

    def __init__(self, credentials: TwitchCredentials, base_url: str = HELIX_BASE):
        super().__init__(base_url)
        self.credentials = credentials

    async def _call(self, method: str, path: str, **kwargs: Any):
        if not self.credentials.available:
            raise CredentialUnavailable(self.service)
        return await self.credentials.call(
            lambda: self._req(method, path, headers=self.credentials.headers(), **kwargs)
        )

    @staticmethod
    def _data(payload: Any) -> List[Dict[str, Any]]:
        if not isinstance(payload, dict):
            return []
        return list(payload.get('data') or [])

    async def get_user(self, login: str) -> Optional[Dict[str, Any]]:
        users = self._data(await self._call('GET', '/users', params={'login': login.lstrip('#').lower()}))
        return users[0] if users else None

    async def get_broadcaster_id(self, login: str) -> Optional[str]:
        user = await self.get_user(login)
        return user.get('id') if user else None

    async def list_rewards(self, broadcaster_id: str) -> List[Dict[str, Any]]:
        return self._data(await self._call(
            'GET', REWARDS_PATH,
            params={'broadcaster_id': broadcaster_id, 'only_manageable_rewards': 'true'},
        ))

    async def create_reward(self, broadcaster_id: str, title: str, cost: int) -> Optional[Dict[str, Any]]:
        rewards = self._data(await self._call(
            'POST', REWARDS_PATH,
            params={'broadcaster_id': broadcaster_id},
            json={'title': title, 'cost': cost, 'is_user_input_required': True},
        ))
        return rewards[0] if rewards else None

    async def ensure_reward(
        self,
        broadcaster_id: str,
        title: str,
        cost: int,
        reward_id: Optional[str] = None,
    ) -> Optional[str]:
        """Return the id of a reward this app can manage, creating one if needed.

        Only rewards created by this client id can have their redemptions
        patched, so a configured id that is not in the manageable list is
        replaced by a matching or freshly created reward.
        """
        try:
            rewards = await self.list_rewards(broadcaster_id)
            if reward_id and any(reward.get('id') == reward_id for reward in rewards):
                return reward_id
            for reward in rewards:
                if (reward.get('title') or '').lower() == title.lower():
                    logger.info('Using existing custom reward "%s" (%s)', title, reward.get('id'))
                    return reward.get('id')
            if reward_id:
                logger.warning('Configured reward %s is not manageable by this app; creating "%s"', reward_id, title)
            created = await self.create_reward(broadcaster_id, title, cost)
        except Forbidden as exc:
            logger.warning('Channel points are unavailable for this channel: %s', exc)
            return None
        if not created:
            return None
        logger.info('Created custom reward "%s" (%s)', title, created.get('id'))
        return created.get('id')

    async def get_redemptions(
        self,
        broadcaster_id: str,
        reward_id: str,
        *,
        status: str = 'UNFULFILLED',
        sort: str = 'NEWEST',
        first: int = 1,
    ) -> List[Dict[str, Any]]:
        return self._data(await self._call(
            'GET', REDEMPTIONS_PATH,
            params={
                'broadcaster_id': broadcaster_id,
                'reward_id': reward_id,
                'status': status,
                'sort': sort,
                'first': str(first),
            },
        ))

    async def update_redemption_status(
        self,
        broadcaster_id: str,
        reward_id: str,
        redemption_id: str,
        status: str,
    ) -> List[Dict[str, Any]]:
        return self._data(await self._call(
            'PATCH', REDEMPTIONS_PATH,
            params={'id': redemption_id, 'broadcaster_id': broadcaster_id, 'reward_id': reward_id},
            json={'status': status},
        ))

    async def create_clip(self, broadcaster_id: str) -> Optional[Dict[str, Any]]:
        clips = self._data(await self._call('POST', '/clips', params={'broadcaster_id': broadcaster_id}))
        return clips[0] if clips else None
