from __future__ import annotations
import asyncio
import html
import logging
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse, RedirectResponse

logger = logging.getLogger(__name__)


class CodeHandoff:
    """Single-use handoff of the authorization code to the waiting startup path."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future = self._loop.create_future()

    def deliver(self, code: str) -> None:
        self._loop.call_soon_threadsafe(self._set, code)

    def _set(self, code: str) -> None:
        if not self._future.done():
            self._future.set_result(code)

    async def wait(self) -> str:
        return await self._future


def _html_response(success: bool, message: str, *, status_code: int = 200) -> HTMLResponse:
    body = f"""<!DOCTYPE html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\" />
    <title>Spotify Authorization</title>
    <style>
      body {{ font-family: sans-serif; margin: 2rem; }}
    </style>
  </head>
  <body>
    <h1>{'Success' if success else 'Authorization Failed'}</h1>
    <p>{html.escape(message)}</p>
  </body>
</html>
"""
    return HTMLResponse(content=body, status_code=status_code)


def create_auth_app(authorize_url: str, on_code: Callable[[str], None]) -> FastAPI:
    app = FastAPI(title='chatdj auth')

    @app.get('/')
    def start_authorization():
        return RedirectResponse(authorize_url)

    @app.get('/spotifyAuth')
    def spotify_callback(code: Optional[str] = None, error: Optional[str] = None):
        if error or not code:
            logger.error("Spotify authorization was not granted: %s", error or 'missing code')
            return _html_response(
                False,
                f"Spotify did not return an authorization code ({error or 'missing code'}).",
                status_code=400,
            )
        on_code(code)
        return _html_response(True, 'Spotify authorization received. You can close this window.')

    return app


async def wait_for_code(authorize_url: str, *, port: int, host: str = '0.0.0.0') -> str:
    """Serve the callback app until Spotify redirects back with a code."""
    handoff = CodeHandoff()
    app = create_auth_app(authorize_url, handoff.deliver)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level='warning'))
    server_task = asyncio.create_task(server.serve())
    logger.info("Waiting for Spotify authorization on port %d", port)
    code_task = asyncio.ensure_future(handoff.wait())
    try:
        await asyncio.wait({code_task, server_task}, return_when=asyncio.FIRST_COMPLETED)
        if not code_task.done():
            raise RuntimeError('Authorization server stopped before a code was received')
        return code_task.result()
    finally:
        code_task.cancel()
        server.should_exit = True
        if not server_task.done():
            await server_task
