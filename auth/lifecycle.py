from __future__ import annotations

import asyncio
import contextlib
import logging
import time

from auth.session_store import SessionStore
from codeverse.constants import AUTH_LOGGER
from codeverse.errors import CodeVerseError, ErrorKind

_REJECTED_KINDS = frozenset({ErrorKind.AUTHENTICATION_EXPIRED, ErrorKind.CLIENT})


class AuthLifecycleManager:
    """Refreshes the access token before it expires.

    One background task does all the checking; timer ticks and app-foreground
    events both just wake it. Transient refresh failures are retried on the
    next wake. A rejected refresh hands off to ``on_session_expired``.
    """

    def __init__(
        self,
        session_store: SessionStore,
        *,
        threshold_seconds: float = 120,
        interval_seconds: float = 60,
        on_session_expired=None,
        clock=time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        self._session_store = session_store
        self._threshold_seconds = threshold_seconds
        self._interval_seconds = interval_seconds
        self._on_session_expired = on_session_expired
        self._clock = clock
        self._logger = logger or AUTH_LOGGER
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="codeverse-auth-lifecycle")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    def app_foregrounded(self) -> None:
        self._wake.set()

    def on_app_state_change(self, state: str) -> None:
        if state == "active":
            self.app_foregrounded()

    async def check(self) -> bool:
        """Refresh now if the token is within the threshold. Returns True if refreshed."""
        session = self._session_store.get_session()
        if session is None or not session.refresh_token:
            return False
        if not session.expires_within(self._threshold_seconds, now=self._clock()):
            return False

        try:
            await self._session_store.refresh()
        except CodeVerseError as error:
            if error.kind not in _REJECTED_KINDS:
                self._logger.warning(
                    "Proactive refresh failed (%s); will retry.", error.kind.value
                )
                return False
            self._logger.warning("Refresh token rejected (%s).", error.kind.value)
            if self._session_store.get_session() is not session:
                # Signed out or signed in again meanwhile; the rejection is stale.
                return False
            if self._on_session_expired is not None:
                await self._on_session_expired(error)
            return False
        return True

    async def _run(self) -> None:
        while True:
            try:
                await self.check()
            except Exception:
                self._logger.exception("Session check failed.")
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wake.wait(), self._interval_seconds)
            self._wake.clear()
