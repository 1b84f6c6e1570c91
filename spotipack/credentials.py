from __future__ import annotations
import asyncio
import base64
import contextlib
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple, TypeVar
from urllib.parse import urlencode

from pydantic import BaseModel, Field, ValidationError, model_validator

from spotipack.errors import AuthExpired, RemoteError, TransientError
from spotipack.http_client import JsonClient, bearer
from spotipack.oauth_server import OAuthCallbackServer

logger = logging.getLogger(__name__)

T = TypeVar('T')

TWITCH_AUTHORIZE_URL = 'https://id.twitch.tv/oauth2/authorize'
TWITCH_TOKEN_URL = 'https://id.twitch.tv/oauth2/token'
TWITCH_VALIDATE_URL = 'https://id.twitch.tv/oauth2/validate'
TWITCH_CALLBACK_PORT = 3000
TWITCH_REDIRECT_URI = f'http://localhost:{TWITCH_CALLBACK_PORT}/callback'
TWITCH_SCOPES = [
    'channel:read:redemptions',
    'channel:manage:redemptions',
    'user:read:email',
    'chat:read',
    'chat:edit',
    'clips:edit',
    'user:read:chat',
    'user:write:chat',
    'user:bot',
]
REDEMPTION_SCOPE = 'channel:manage:redemptions'

SPOTIFY_AUTHORIZE_URL = 'https://accounts.spotify.com/authorize'
SPOTIFY_TOKEN_URL = 'https://accounts.spotify.com/api/token'
SPOTIFY_ME_URL = 'https://api.spotify.com/v1/me'
SPOTIFY_SCOPES = [
    'user-modify-playback-state',
    'user-read-playback-state',
    'user-read-currently-playing',
]

VALIDATION_INTERVAL = 3600


class CredentialState(str, Enum):
    UNAUTHENTICATED = 'unauthenticated'
    PENDING_AUTH = 'pending_auth'
    AUTHENTICATED = 'authenticated'
    REFRESHING = 'refreshing'
    DEGRADED = 'degraded'


USABLE_STATES = frozenset({
    CredentialState.AUTHENTICATED,
    CredentialState.REFRESHING,
    CredentialState.DEGRADED,
})


class TokenDocument(BaseModel):
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    scopes: List[str] = Field(default_factory=list)
    expires_in: Optional[int] = None
    obtained_at: Optional[datetime] = None

    @model_validator(mode='before')
    @classmethod
    def _accept_provider_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if 'scopes' not in data and 'scope' in data:
            data['scopes'] = data.pop('scope')
        scopes = data.get('scopes')
        if isinstance(scopes, str):
            data['scopes'] = [scope for scope in scopes.split() if scope]
        elif scopes is None:
            data['scopes'] = []
        return data

    @classmethod
    def from_token_response(
        cls,
        payload: Dict[str, Any],
        *,
        previous: Optional['TokenDocument'] = None,
    ) -> 'TokenDocument':
        data = dict(payload or {})
        if not data.get('access_token'):
            raise ValueError('token response missing access_token')
        if not data.get('refresh_token') and previous is not None:
            data['refresh_token'] = previous.refresh_token
        if not data.get('scope') and not data.get('scopes') and previous is not None:
            data['scopes'] = list(previous.scopes)
        data['obtained_at'] = datetime.now(timezone.utc)
        return cls.model_validate(data)


class CredentialManager(JsonClient):
    """Owns one service's access/refresh token pair.

    ``call`` is the single place where the refresh-and-retry-once contract
    lives: the operation is invoked, an ``AuthExpired`` triggers at most one
    refresh, and the operation is invoked exactly once more. Refreshes are
    coalesced so concurrent callers share one in-flight request.
    """

    service = 'generic'
    service_label = 'Generic'
    required = False
    authorize_url = ''
    token_url = ''
    scopes: List[str] = []
    required_scopes: FrozenSet[str] = frozenset()

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        token_path: Path,
        *,
        redirect_uri: str,
        callback_port: int,
        callback_server_factory: Optional[Callable[..., OAuthCallbackServer]] = None,
        auth_timeout: Optional[float] = None,
    ):
        super().__init__()
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_path = Path(token_path)
        self.redirect_uri = redirect_uri
        self.callback_port = callback_port
        self.auth_timeout = auth_timeout
        self._callback_server_factory = callback_server_factory or OAuthCallbackServer
        self._document: Optional[TokenDocument] = None
        self._state = CredentialState.UNAUTHENTICATED
        self._generation = 0
        self._refresh_task: Optional[asyncio.Task] = None

    # ---- state ----
    @property
    def state(self) -> CredentialState:
        return self._state

    @property
    def available(self) -> bool:
        return self._state in USABLE_STATES and self._document is not None

    @property
    def degraded(self) -> bool:
        return self._state == CredentialState.DEGRADED

    @property
    def access_token(self) -> Optional[str]:
        return self._document.access_token if self._document else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._document.refresh_token if self._document else None

    @property
    def granted_scopes(self) -> List[str]:
        return list(self._document.scopes) if self._document else []

    def has_scope(self, scope: str) -> bool:
        return scope in self.granted_scopes

    def headers(self) -> Dict[str, str]:
        return bearer(self.access_token or '')

    def _state_for_scopes(self, scopes: Optional[List[str]]) -> CredentialState:
        if scopes is not None and not self.required_scopes.issubset(scopes):
            return CredentialState.DEGRADED
        return CredentialState.AUTHENTICATED

    def _state_after_failed_refresh(self, previous: CredentialState) -> CredentialState:
        return CredentialState.UNAUTHENTICATED

    # ---- persistence ----
    def load(self) -> Optional[TokenDocument]:
        try:
            raw = self.token_path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning('could not read %s token file %s: %s', self.service, self.token_path, exc)
            return None
        try:
            document = TokenDocument.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            logger.warning('ignoring unreadable %s token file %s: %s', self.service, self.token_path, exc)
            return None
        self._document = document
        self._generation += 1
        logger.info('loaded saved %s token', self.service_label)
        return document

    def save(self) -> None:
        if self._document is None:
            return
        directory = self.token_path.parent
        tmp_path: Optional[str] = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{self.token_path.name}.", suffix='.tmp', dir=directory)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(self._document.model_dump_json(indent=2))
            os.replace(tmp_path, self.token_path)
            tmp_path = None
        except OSError:
            # The in-memory token stays usable; only the next restart is affected.
            logger.exception('failed to persist %s token to %s', self.service, self.token_path)
        finally:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)

    def _install(self, document: TokenDocument, state: CredentialState) -> None:
        self._document = document
        self._generation += 1
        self._state = state
        self.save()

    def adopt(self, access_token: str, refresh_token: Optional[str], scopes: Optional[List[str]] = None) -> None:
        payload: Dict[str, Any] = {'access_token': access_token, 'refresh_token': refresh_token}
        if scopes is not None:
            payload['scopes'] = list(scopes)
        document = TokenDocument.from_token_response(payload, previous=self._document)
        self._install(document, self._state_for_scopes(document.scopes))

    # ---- remote operations (service specific) ----
    async def _probe(self, access_token: str) -> Tuple[bool, Optional[List[str]]]:
        raise NotImplementedError

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        raise NotImplementedError

    async def _request_refresh(self, refresh_token: str) -> Dict[str, Any]:
        return await self._token_request({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        })

    async def _exchange_code(self, code: str) -> Dict[str, Any]:
        return await self._token_request({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.redirect_uri,
        })

    def build_authorize_url(self) -> str:
        params = {
            'response_type': 'code',
            'client_id': self.client_id or '',
            'redirect_uri': self.redirect_uri,
            'scope': ' '.join(self.scopes),
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    # ---- lifecycle ----
    async def validate(self) -> bool:
        if self._document is None:
            return False
        try:
            valid, scopes = await self._probe(self._document.access_token)
        except RemoteError as exc:
            logger.warning('%s token validation error: %s', self.service_label, exc)
            return False
        if not valid:
            return False
        if scopes is not None and list(scopes) != self._document.scopes:
            self._document = self._document.model_copy(update={'scopes': list(scopes)})
        self._state = self._state_for_scopes(scopes)
        if self._state == CredentialState.DEGRADED:
            missing = sorted(self.required_scopes.difference(scopes or []))
            logger.warning(
                '%s token is valid but missing %s; dependent features are disabled',
                self.service_label, ', '.join(missing),
            )
        return True

    async def ensure_valid(self) -> bool:
        if await self.validate():
            return True
        logger.warning('%s token invalid, attempting refresh...', self.service_label)
        if not await self.refresh():
            return False
        return await self.validate()

    async def refresh(self) -> bool:
        task = self._refresh_task
        if task is None or task.done():
            task = asyncio.create_task(self._run_refresh())
            self._refresh_task = task
        return await asyncio.shield(task)

    async def _run_refresh(self) -> bool:
        document = self._document
        if document is None or not document.refresh_token:
            logger.error('No %s refresh token available.', self.service_label)
            self._state = self._state_after_failed_refresh(self._state)
            return False
        previous = self._state
        self._state = CredentialState.REFRESHING
        try:
            payload = await self._request_refresh(document.refresh_token)
            refreshed = TokenDocument.from_token_response(payload, previous=document)
        except TransientError as exc:
            logger.warning('Could not reach %s to refresh the access token: %s', self.service_label, exc)
            self._state = previous
            return False
        except (RemoteError, ValueError, ValidationError) as exc:
            logger.error('Failed to refresh %s access token: %s', self.service_label, exc)
            self._state = self._state_after_failed_refresh(previous)
            return False
        state = self._state_for_scopes(refreshed.scopes if refreshed.scopes else None)
        self._install(refreshed, state)
        logger.info('%s access token refreshed successfully.', self.service_label)
        return True

    async def call(self, op: Callable[[], Awaitable[T]]) -> T:
        issued = self._generation
        try:
            return await op()
        except AuthExpired:
            if self._generation == issued:
                if not await self.refresh():
                    raise
            else:
                logger.debug('%s token already refreshed by a concurrent caller', self.service_label)
        return await op()

    async def authorize_interactively(self) -> bool:
        if not self.client_id or not self.client_secret:
            logger.error('%s client id/secret are not configured', self.service_label)
            self._state = CredentialState.UNAUTHENTICATED
            return False
        self._state = CredentialState.PENDING_AUTH
        server = self._callback_server_factory(
            port=self.callback_port,
            authorize_url=self.build_authorize_url(),
            service_label=self.service_label,
        )
        try:
            code = await server.wait_for_code(timeout=self.auth_timeout)
            payload = await self._exchange_code(code)
            document = TokenDocument.from_token_response(payload, previous=self._document)
        except (RemoteError, RuntimeError, ValueError, ValidationError, asyncio.TimeoutError) as exc:
            logger.error('%s OAuth error: %s', self.service_label, exc)
            self._state = CredentialState.UNAUTHENTICATED
            return False
        self._install(document, self._state_for_scopes(document.scopes or None))
        logger.info('%s token saved to %s', self.service_label, self.token_path)
        return await self.validate()

    async def bootstrap(self) -> bool:
        if self._document is None:
            self.load()
        if self._document is not None:
            if await self.ensure_valid():
                return True
            logger.warning('Saved %s token is invalid or expired. Starting OAuth flow...', self.service_label)
        else:
            logger.info('No saved %s token found, starting OAuth flow...', self.service_label)
        ok = await self.authorize_interactively()
        if not ok and self.required:
            raise SystemExit(f'Unable to obtain a {self.service_label} token; cannot continue without chat access.')
        if not ok:
            logger.warning('%s is unavailable; dependent features are disabled.', self.service_label)
        return ok


class TwitchCredentials(CredentialManager):
    service = 'twitch'
    service_label = 'Twitch'
    required = True
    authorize_url = TWITCH_AUTHORIZE_URL
    token_url = TWITCH_TOKEN_URL
    scopes = TWITCH_SCOPES
    required_scopes = frozenset({REDEMPTION_SCOPE})

    def __init__(self, client_id: Optional[str], client_secret: Optional[str], token_path: Path, **kwargs: Any):
        kwargs.setdefault('redirect_uri', TWITCH_REDIRECT_URI)
        kwargs.setdefault('callback_port', TWITCH_CALLBACK_PORT)
        super().__init__(client_id, client_secret, token_path, **kwargs)
        self.user_id: Optional[str] = None
        self.login: Optional[str] = None
        self._validation_task: Optional[asyncio.Task] = None

    def headers(self) -> Dict[str, str]:
        return bearer(self.access_token or '', {'Client-Id': self.client_id or ''})

    def _state_after_failed_refresh(self, previous: CredentialState) -> CredentialState:
        # Chat keeps running on the existing connection; redemption handling is lost.
        if previous in USABLE_STATES:
            return CredentialState.DEGRADED
        return CredentialState.UNAUTHENTICATED

    async def _probe(self, access_token: str) -> Tuple[bool, Optional[List[str]]]:
        try:
            data = await self._req('GET', TWITCH_VALIDATE_URL, headers={'Authorization': f"OAuth {access_token}"})
        except AuthExpired:
            return False, None
        if not isinstance(data, dict):
            return False, None
        self.user_id = data.get('user_id') or self.user_id
        self.login = data.get('login') or self.login
        return True, list(data.get('scopes') or [])

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        form = dict(data)
        form['client_id'] = self.client_id or ''
        form['client_secret'] = self.client_secret or ''
        return await self._req('POST', self.token_url, data=form)

    async def validation_loop(self, interval: float = VALIDATION_INTERVAL) -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                if not await self.ensure_valid():
                    logger.error('[Twitch] Token refresh failed. Refunds will be disabled, but chat will remain active.')
        except asyncio.CancelledError:
            raise
        finally:
            self._validation_task = None

    def start_validation_loop(self, interval: float = VALIDATION_INTERVAL) -> asyncio.Task:
        task = self._validation_task
        if task and not task.done():
            return task
        self._validation_task = asyncio.create_task(self.validation_loop(interval))
        return self._validation_task

    async def stop_validation_loop(self) -> None:
        task = self._validation_task
        if not task:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._validation_task = None


class SpotifyCredentials(CredentialManager):
    service = 'spotify'
    service_label = 'Spotify'
    authorize_url = SPOTIFY_AUTHORIZE_URL
    token_url = SPOTIFY_TOKEN_URL
    scopes = SPOTIFY_SCOPES

    def __init__(self, client_id: Optional[str], client_secret: Optional[str], token_path: Path, *, port: int, **kwargs: Any):
        kwargs.setdefault('redirect_uri', f'http://localhost:{port}/callback')
        kwargs.setdefault('callback_port', port)
        super().__init__(client_id, client_secret, token_path, **kwargs)

    def _basic_auth(self) -> str:
        raw = f"{self.client_id or ''}:{self.client_secret or ''}".encode('utf-8')
        return 'Basic ' + base64.b64encode(raw).decode('ascii')

    async def _probe(self, access_token: str) -> Tuple[bool, Optional[List[str]]]:
        try:
            await self._req('GET', SPOTIFY_ME_URL, headers=bearer(access_token))
        except AuthExpired:
            return False, None
        return True, None

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        headers = {
            'Authorization': self._basic_auth(),
            'Content-Type': 'application/x-www-form-urlencoded',
        }
        return await self._req('POST', self.token_url, headers=headers, data=data)
