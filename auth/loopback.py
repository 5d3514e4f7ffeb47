from __future__ import annotations

import asyncio
import html
import webbrowser

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.routing import Route

from auth.browser import BrowserResult, BrowserSession

_DONE_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>CodeVerse</title></head>
<body>
  <h1>{title}</h1>
  <p>{message}</p>
</body>
</html>"""


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        _DONE_PAGE.format(title=html.escape(title), message=html.escape(message)),
        status_code=status_code,
    )


def build_redirect_app(deliver) -> Starlette:
    """Local HTTP stand-in for the OS deep-link handler.

    Every matching request's full URL is passed to ``deliver`` (an async
    callable such as ``DeepLinkListener.deliver``); parsing and validation
    happen there.
    """

    async def redirect_route(request: Request) -> Response:
        await deliver(str(request.url))
        if request.query_params.get("error"):
            return _page("Sign-in cancelled", "You can close this window.", 400)
        return _page("Signed in", "You can close this window and return to CodeVerse.")

    return Starlette(
        routes=[
            Route("/auth", redirect_route, methods=["GET"]),
            Route("/auth/callback", redirect_route, methods=["GET"]),
            Route("/auth/{provider}/{code}", redirect_route, methods=["GET"]),
        ]
    )


class LoopbackBrowserSession(BrowserSession):
    """Direct-mode browser session: ``open`` resolves with the redirect URL.

    Serve ``build_redirect_app(session.deliver)`` on the loopback redirect URI
    while ``open`` is waiting.
    """

    def __init__(self, opener=webbrowser.open, *, timeout: float | None = 300) -> None:
        self._opener = opener
        self._timeout = timeout
        self._redirect: asyncio.Future[str] | None = None

    async def open(self, url: str, return_url: str) -> BrowserResult:
        del return_url
        self._redirect = asyncio.get_running_loop().create_future()
        opened = await asyncio.to_thread(self._opener, url)
        if not opened:
            return BrowserResult("cancel")
        try:
            redirect_url = await asyncio.wait_for(self._redirect, self._timeout)
        except asyncio.TimeoutError:
            return BrowserResult("dismiss")
        return BrowserResult("success", redirect_url)

    async def deliver(self, url: str) -> None:
        if self._redirect is not None and not self._redirect.done():
            self._redirect.set_result(url)
