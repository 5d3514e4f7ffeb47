from __future__ import annotations

import asyncio
import webbrowser
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class BrowserResult:
    """Outcome of an external authorization UI.

    ``type`` is ``success`` (with the redirect ``url``), ``dismiss`` or
    ``cancel`` when the user backed out, or ``opened`` when the browser was
    handed the URL and the redirect will arrive separately as a deep link.
    """

    type: str
    url: str | None = None


class BrowserSession(ABC):
    @abstractmethod
    async def open(self, url: str, return_url: str) -> BrowserResult:
        raise NotImplementedError


class SystemBrowserSession(BrowserSession):
    def __init__(self, opener=webbrowser.open) -> None:
        self._opener = opener

    async def open(self, url: str, return_url: str) -> BrowserResult:
        del return_url
        opened = await asyncio.to_thread(self._opener, url)
        return BrowserResult("opened" if opened else "cancel")
