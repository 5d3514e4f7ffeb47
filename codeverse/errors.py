from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NETWORK = "network"
    SERVER = "server"
    RATE_LIMITED = "rate_limited"
    CLIENT = "client"
    AUTHENTICATION_EXPIRED = "authentication_expired"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    LIMIT_REACHED = "limit_reached"
    INVALID_RESPONSE = "invalid_response"
    OAUTH_STATE_MISMATCH = "oauth_state_mismatch"
    OAUTH_PROVIDER_MISMATCH = "oauth_provider_mismatch"
    OAUTH_EXCHANGE_FAILURE = "oauth_exchange_failure"


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.SERVER, ErrorKind.RATE_LIMITED})


class CodeVerseError(RuntimeError):
    kind: ErrorKind = ErrorKind.CLIENT

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        payload: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class NetworkError(CodeVerseError):
    kind = ErrorKind.NETWORK


class ServerError(CodeVerseError):
    kind = ErrorKind.SERVER


class RateLimited(CodeVerseError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ClientError(CodeVerseError):
    kind = ErrorKind.CLIENT


class AuthenticationExpired(CodeVerseError):
    kind = ErrorKind.AUTHENTICATION_EXPIRED

    def __init__(self, message: str = "Session expired; sign in again.", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InsufficientBalance(CodeVerseError):
    """402 from the AI endpoints: the account cannot pay for the request."""

    kind = ErrorKind.INSUFFICIENT_BALANCE

    def __init__(
        self,
        message: str,
        *,
        tokens_required: int,
        tokens_available: int,
        free_remaining: int | None = None,
        purchased_remaining: int | None = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.tokens_required = tokens_required
        self.tokens_available = tokens_available
        self.free_remaining = free_remaining
        self.purchased_remaining = purchased_remaining


class LimitReached(CodeVerseError):
    """403 on conversation creation: the plan's conversation cap is used up."""

    kind = ErrorKind.LIMIT_REACHED

    def __init__(self, message: str, *, limit: int, current: int, plan: str, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.limit = limit
        self.current = current
        self.plan = plan


class InvalidResponse(CodeVerseError):
    kind = ErrorKind.INVALID_RESPONSE


class OAuthStateMismatch(CodeVerseError):
    kind = ErrorKind.OAUTH_STATE_MISMATCH


class OAuthProviderMismatch(CodeVerseError):
    kind = ErrorKind.OAUTH_PROVIDER_MISMATCH


class OAuthExchangeFailure(CodeVerseError):
    kind = ErrorKind.OAUTH_EXCHANGE_FAILURE


def friendly_error_message(error: CodeVerseError) -> str:
    if error.kind in RETRYABLE_KINDS:
        return "Something went wrong. Please check your connection and try again."
    if error.kind is ErrorKind.AUTHENTICATION_EXPIRED:
        return "Your session has expired. Please sign in again."
    if error.kind is ErrorKind.INSUFFICIENT_BALANCE:
        return "You don't have enough tokens for this. Recharge to continue."
    if error.kind is ErrorKind.LIMIT_REACHED:
        return (
            "You've reached the conversation limit for your plan. "
            "Delete a conversation or upgrade to continue."
        )
    if error.kind is ErrorKind.OAUTH_EXCHANGE_FAILURE:
        return "Sign-in could not be completed. Please try again."
    if error.kind is ErrorKind.CLIENT:
        return error.message
    return "Unexpected response from CodeVerse. Please try again later."
