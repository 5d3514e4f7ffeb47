from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    authorization_endpoint: str
    scopes: tuple[str, ...]
    extra_params: dict[str, str] = field(default_factory=dict)


GOOGLE = ProviderConfig(
    name="google",
    authorization_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
    scopes=("openid", "profile", "email"),
    extra_params={"access_type": "offline", "prompt": "consent"},
)

GITHUB = ProviderConfig(
    name="github",
    authorization_endpoint="https://github.com/login/oauth/authorize",
    scopes=("read:user", "user:email"),
)


class ProviderRegistry:
    def __init__(self, client_ids: dict[str, str] | None = None) -> None:
        self._providers: dict[str, ProviderConfig] = {}
        self._client_ids: dict[str, str] = {}
        for provider in (GOOGLE, GITHUB):
            self.register(provider, (client_ids or {}).get(provider.name, ""))

    def register(self, provider: ProviderConfig, client_id: str) -> None:
        self._providers[provider.name] = provider
        self._client_ids[provider.name] = client_id

    def get(self, name: str) -> ProviderConfig | None:
        return self._providers.get(name)

    def client_id(self, name: str) -> str:
        return self._client_ids.get(name, "")

    def names(self) -> set[str]:
        return set(self._providers)
