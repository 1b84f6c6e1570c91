from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional


class Role(str, Enum):
    STREAMER = 'streamer'
    MOD = 'mod'
    VIP = 'vip'
    SUB = 'sub'
    EVERYONE = 'everyone'


@dataclass(frozen=True)
class ChatterTags:
    username: str
    display_name: Optional[str] = None
    user_id: Optional[str] = None
    badges: Mapping[str, str] = field(default_factory=dict)
    badge_info: Mapping[str, str] = field(default_factory=dict)
    mod: object = False

    @property
    def label(self) -> str:
        return self.display_name or self.username


def _flag(value: object) -> bool:
    return value is True or value == '1' or value == 1


def resolve_roles(channel: str, tags: ChatterTags) -> FrozenSet[Role]:
    channel_login = (channel or '').lstrip('#').lower()
    badges: Dict[str, str] = dict(tags.badges or {})
    roles = {Role.EVERYONE}
    if badges.get('broadcaster') == '1' or (tags.username or '').lower() == channel_login:
        roles.add(Role.STREAMER)
    if _flag(tags.mod) or badges.get('moderator') == '1':
        roles.add(Role.MOD)
    if badges.get('vip') == '1':
        roles.add(Role.VIP)
    if 'subscriber' in badges or 'founder' in badges or (tags.badge_info or {}).get('subscriber'):
        roles.add(Role.SUB)
    return frozenset(roles)


def roles_eligible(roles: Iterable[Role], allowed: Iterable[Role]) -> bool:
    allowed_set = {Role(role) for role in allowed}
    if Role.EVERYONE in allowed_set:
        return True
    return bool(allowed_set.intersection(roles))


def is_eligible(channel: str, tags: ChatterTags, allowed: Iterable[Role]) -> bool:
    return roles_eligible(resolve_roles(channel, tags), allowed)
