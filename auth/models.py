from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass
class Session:
    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None

    def expires_within(self, seconds: float, *, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return self.expires_at - current <= seconds


@dataclass
class PendingAuthorization:
    provider: str
    code_verifier: str
    state: str
    redirect_uri: str
    created_at: float

    def expired(self, ttl_seconds: float | None, *, now: float | None = None) -> bool:
        if ttl_seconds is None:
            return False
        current = time.time() if now is None else now
        return current - self.created_at > ttl_seconds


@dataclass(frozen=True)
class AuthorizationResult:
    provider: str | None
    code: str | None
    state: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class MagicLinkResult:
    access_token: str
    refresh_token: str
    expires_at: str | None = None
