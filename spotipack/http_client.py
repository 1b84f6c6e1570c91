from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

import aiohttp

from spotipack.errors import TransientError, raise_for_status

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=10)


class JsonClient:
    service = 'remote'

    def __init__(self, base_url: str = ''):
        self.base = base_url.rstrip('/')
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=REQUEST_TIMEOUT)

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    def _url(self, path: str) -> str:
        if path.startswith('http://') or path.startswith('https://'):
            return path
        return f"{self.base}{path}"

    async def _req(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        json: Optional[Any] = None,
        data: Optional[Mapping[str, Any]] = None,
    ):
        if not self.session:
            await self.start()
        url = self._url(path)
        try:
            async with self.session.request(
                method, url, headers=dict(headers or {}), params=params, json=json, data=data,
            ) as r:
                content_type = r.headers.get('content-type', '')
                is_json = content_type.startswith('application/json')
                if r.status >= 400:
                    detail: object = ''
                    if is_json:
                        try:
                            body = await r.json()
                        except Exception:
                            body = None
                        detail = _error_detail(body)
                    if not detail:
                        try:
                            detail = await r.text()
                        except Exception:
                            detail = ''
                    raise_for_status(r.status, detail or f"{method} {path} failed", service=self.service)
                if r.status == 204:
                    return None
                if is_json:
                    return await r.json()
                text = await r.text()
                return text or None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning('%s %s %s failed: %s', self.service, method, path, exc)
            raise TransientError(0, str(exc) or type(exc).__name__, service=self.service) from exc


def _error_detail(body: object) -> object:
    if not isinstance(body, dict):
        return body or ''
    error = body.get('error')
    if isinstance(error, dict):
        return error.get('message') or error
    if 'message' in body:
        return body['message']
    if isinstance(error, str):
        return body.get('error_description') or error
    return body


def bearer(token: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = {'Authorization': f"Bearer {token}"}
    if extra:
        headers.update(extra)
    return headers
