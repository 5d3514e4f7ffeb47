from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict

from auth.models import Session
from auth.storage import KeyValueStore
from auth.tokens import apply_refresh
from codeverse.constants import AUTH_LOGGER, SESSION_KEY
from codeverse.errors import AuthenticationExpired


class SessionStore:
    """Owns the single signed-in session and its persisted copy.

    ``refresh()`` is single-flight: concurrent callers share one network call
    and all observe its result or exception. A failed refresh leaves the
    session in place; callers decide whether that means signing out. If a new
    session is set while a refresh is in flight, the refresh result is dropped
    and callers get the new session's token.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        refresh_fn,
        logger: logging.Logger | None = None,
    ) -> None:
        self._storage = storage
        self._refresh_fn = refresh_fn
        self._logger = logger or AUTH_LOGGER
        self._session: Session | None = None
        self._refresh_task: asyncio.Task[str] | None = None

    async def load(self) -> Session | None:
        payload = await self._storage.get(SESSION_KEY)
        if payload is None:
            self._session = None
            return None
        try:
            self._session = Session(**payload)
        except TypeError:
            self._logger.warning("Discarding unreadable persisted session.")
            await self._storage.delete(SESSION_KEY)
            self._session = None
        return self._session

    def get_session(self) -> Session | None:
        return self._session

    @property
    def signed_in(self) -> bool:
        return self._session is not None

    async def set_session(self, session: Session) -> None:
        self._session = session
        await self._storage.set(SESSION_KEY, asdict(session))
        self._logger.info("Session activated.")

    async def clear(self) -> None:
        self._session = None
        await self._storage.delete(SESSION_KEY)
        self._logger.info("Session cleared.")

    async def refresh(self) -> str:
        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._run_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _run_refresh(self) -> str:
        try:
            session = self._session
            if session is None or not session.refresh_token:
                raise AuthenticationExpired("No refresh token available.")

            payload = await self._refresh_fn(session.refresh_token)
            if self._session is None:
                raise AuthenticationExpired("Signed out during refresh.")
            if self._session is not session:
                # A new sign-in landed mid-flight; its token wins over the refreshed one.
                self._logger.info("Session replaced during refresh; keeping the new session.")
                return self._session.access_token

            apply_refresh(session, payload)
            await self._storage.set(SESSION_KEY, asdict(session))
            self._logger.info("Access token refreshed.")
            return session.access_token
        except Exception as error:
            self._logger.warning("Access token refresh failed: %s", error)
            raise
        finally:
            self._refresh_task = None
