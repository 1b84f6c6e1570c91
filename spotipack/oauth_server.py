from __future__ import annotations
import asyncio
import html
import logging
import webbrowser
from typing import Awaitable, Callable, Optional

import uvicorn
from fastapi import FastAPI, Query
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse

logger = logging.getLogger(__name__)


def _oauth_html_response(success: bool, message: str, *, status_code: int = 200) -> HTMLResponse:
    message_text = html.escape(message or '')
    body = f"""<!DOCTYPE html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\" />
    <title>Authorization</title>
    <style>
      body {{ font-family: sans-serif; margin: 2rem; }}
    </style>
  </head>
  <body>
    <h1>{'Success' if success else 'Authorization Failed'}</h1>
    <p>{message_text or ('Authorization completed successfully. You can close this window.' if success else 'Unable to complete authorization.')}</p>
    <script>
      setTimeout(function() {{
        try {{ window.close(); }} catch (err) {{ /* ignore */ }}
      }}, 1500);
    </script>
  </body>
</html>
"""
    return HTMLResponse(content=body, status_code=status_code)


def create_callback_app(
    authorize_url: str,
    *,
    service_label: str,
    on_code: Callable[[str], None],
    on_error: Callable[[str], None],
) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.get('/login')
    async def login():
        return RedirectResponse(authorize_url)

    @app.get('/callback')
    async def callback(
        code: Optional[str] = Query(None),
        error: Optional[str] = Query(None),
        error_description: Optional[str] = Query(None),
    ):
        if error:
            message = error_description or error
            on_error(message)
            return _oauth_html_response(False, f'{service_label} authorization failed: {message}', status_code=400)
        if not code:
            return _oauth_html_response(False, 'Error: Missing authorization code.', status_code=400)
        logger.debug('received %s oauth code', service_label)
        on_code(code)
        return _oauth_html_response(True, f'{service_label} OAuth complete. You may now close this tab.')

    return app


OVERLAY_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8" />
    <style>
      body { margin: 0; font-family: sans-serif; background: transparent; color: #fff; }
      .track { font-size: 36px; font-weight: 600; padding: 14px 22px; white-space: nowrap; overflow: hidden; text-overflow: ellipsis; }
    </style>
  </head>
  <body>
    <div class="track" id="track-text">Loading...</div>
    <script>
      async function fetchTrack() {
        try {
          const res = await fetch('/now-playing-track');
          const data = await res.text();
          document.getElementById('track-text').textContent = data || 'Nothing playing right now';
        } catch (e) { /* keep the previous title */ }
      }
      fetchTrack();
      setInterval(fetchTrack, 5000);
    </script>
  </body>
</html>
"""


def create_overlay_app(now_playing: Callable[[], Awaitable[Optional[str]]]) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.get('/now-playing')
    async def overlay_page():
        return HTMLResponse(OVERLAY_PAGE)

    @app.get('/now-playing-track')
    async def overlay_track():
        try:
            track = await now_playing()
        except Exception:
            logger.exception('failed to fetch the current track for the overlay')
            track = None
        return PlainTextResponse(track or 'Nothing playing right now')

    return app


class LocalServer:
    def __init__(self, app: FastAPI, *, port: int, host: str = 'localhost'):
        self.app = app
        self.port = port
        self.host = host
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> asyncio.Task:
        if self._task and not self._task.done():
            return self._task
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level='warning', lifespan='off')
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        return self._task

    async def stop(self) -> None:
        task = self._task
        if self._server is not None:
            self._server.should_exit = True
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._server = None
        self._task = None


class OAuthCallbackServer:
    """Temporary local listener that captures one authorization code.

    ``/login`` redirects to the provider's consent page and ``/callback``
    receives the code. The listener is shut down once a code (or an explicit
    provider error) has been received.
    """

    def __init__(
        self,
        *,
        port: int,
        authorize_url: str,
        service_label: str,
        host: str = 'localhost',
        browser_open: Optional[Callable[[str], object]] = None,
    ):
        self.port = port
        self.host = host
        self.authorize_url = authorize_url
        self.service_label = service_label
        self._browser_open = browser_open or webbrowser.open
        self._future: Optional[asyncio.Future] = None

    @property
    def login_url(self) -> str:
        return f"http://{self.host}:{self.port}/login"

    def _resolve(self, code: str) -> None:
        if self._future is not None and not self._future.done():
            self._future.set_result(code)

    def _fail(self, message: str) -> None:
        if self._future is not None and not self._future.done():
            self._future.set_exception(RuntimeError(message))

    def build_app(self) -> FastAPI:
        return create_callback_app(
            self.authorize_url,
            service_label=self.service_label,
            on_code=self._resolve,
            on_error=self._fail,
        )

    async def wait_for_code(self, timeout: Optional[float] = None) -> str:
        self._future = asyncio.get_running_loop().create_future()
        server = LocalServer(self.build_app(), port=self.port, host=self.host)
        serve_task = server.start()
        logger.info('%s OAuth server started on %s', self.service_label, self.login_url)
        try:
            self._browser_open(self.login_url)
        except Exception:
            logger.warning('could not open a browser; visit %s to authorize %s', self.login_url, self.service_label)
        try:
            done, _ = await asyncio.wait(
                {self._future, serve_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if self._future in done:
                return self._future.result()
            if serve_task in done:
                raise RuntimeError(f"{self.service_label} OAuth server stopped before authorization completed")
            raise asyncio.TimeoutError(f"{self.service_label} authorization timed out")
        finally:
            await server.stop()
            logger.info('%s OAuth server closed', self.service_label)
