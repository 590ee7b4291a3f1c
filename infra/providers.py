"""LLM provider configuration: a closed set of providers behind one capability interface.

Every outbound LLM request starts by resolving a fresh provider configuration
from the user settings store (the user can switch provider or rotate a key
between two calls, so nothing here is cached).

Supported providers
-------------------
* ``anthropic``: Anthropic Messages API, authenticated with ``x-api-key``.
* ``litellm``: a LiteLLM gateway exposing the same ``/v1/messages`` route,
  authenticated with a bearer token.

Adding a provider means one new config class, one ``Provider`` member and one
branch in :func:`load_provider_config`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol, runtime_checkable

import httpx

ANTHROPIC_API = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"


# ---------------------------------------------------------------------------
# Settings access
# ---------------------------------------------------------------------------


class SettingsReader(Protocol):
    """Read side of the user settings store.

    ``get`` raises ``KeyError`` (or a subclass) for a key that was never set.
    """

    async def get(self, key: str) -> str:
        ...


async def _read_setting(store: SettingsReader, key: str) -> str | None:
    try:
        return await store.get(key)
    except KeyError:
        return None


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ProviderConfigError(Exception):
    """Missing or invalid provider settings. Never retried."""


class ProviderRequestError(Exception):
    """Network failure or non-2xx answer from a provider. Never retried."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __repr__(self) -> str:  # pragma: no cover
        return f"{type(self).__name__}({self.args[0]!r}, status_code={self.status_code})"


# ---------------------------------------------------------------------------
# Provider selector
# ---------------------------------------------------------------------------


class Provider(StrEnum):
    ANTHROPIC = "anthropic"
    LITELLM = "litellm"

    @classmethod
    def parse(cls, value: str) -> Provider:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ProviderConfigError(f"Unknown provider: {value}") from None


# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------


@runtime_checkable
class ProviderCapabilities(Protocol):
    """What the chat gateway and model catalog need from a provider."""

    @property
    def endpoint(self) -> str:
        """Chat completion URL."""
        ...

    @property
    def models_endpoint(self) -> str:
        """Model listing URL."""
        ...

    def headers(self) -> dict[str, str]:
        """Authentication / versioning headers for every request."""
        ...

    def validate(self) -> None:
        """Raise :class:`ProviderConfigError` if a required field is unusable."""
        ...


@dataclass(frozen=True)
class AnthropicConfig:
    api_key: str = field(repr=False)

    @property
    def endpoint(self) -> str:
        return f"{ANTHROPIC_API}/v1/messages"

    @property
    def models_endpoint(self) -> str:
        return f"{ANTHROPIC_API}/v1/models"

    def headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}

    def validate(self) -> None:
        if not self.api_key.strip():
            raise ProviderConfigError("Anthropic API key cannot be empty")


@dataclass(frozen=True)
class LiteLLMConfig:
    base_url: str
    api_key: str = field(repr=False)

    @property
    def _base(self) -> str:
        return self.base_url.strip().rstrip("/")

    @property
    def endpoint(self) -> str:
        return f"{self._base}/v1/messages"

    @property
    def models_endpoint(self) -> str:
        return f"{self._base}/v1/models"

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def validate(self) -> None:
        if not self.base_url.strip():
            raise ProviderConfigError("LiteLLM base URL cannot be empty")
        if not self.api_key.strip():
            raise ProviderConfigError("LiteLLM API key cannot be empty")
        try:
            url = httpx.URL(self.base_url.strip())
        except httpx.InvalidURL as exc:
            raise ProviderConfigError(f"Invalid URL format: {exc}") from exc
        if not url.scheme or not url.host:
            raise ProviderConfigError(f"Invalid URL format: {self.base_url!r} needs a scheme and host")


ProviderConfig = AnthropicConfig | LiteLLMConfig


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


async def load_provider(store: SettingsReader) -> Provider:
    """Return the selected provider (``anthropic`` when nothing is saved)."""
    return Provider.parse(await _read_setting(store, "api_provider") or Provider.ANTHROPIC.value)


async def load_provider_config(store: SettingsReader, env_api_key: str = "") -> ProviderConfig:
    """Build and validate the configuration of the currently selected provider.

    Args:
        store:       User settings store.
        env_api_key: Anthropic key from the process environment, used when no
                     key was saved through the Settings screen.

    Raises:
        ProviderConfigError: unknown provider, missing setting or invalid value.
    """
    provider = await load_provider(store)

    match provider:
        case Provider.ANTHROPIC:
            api_key = await _read_setting(store, "anthropic_api_key")
            if api_key is None:
                api_key = env_api_key or None
            if api_key is None:
                raise ProviderConfigError("Anthropic API key not configured. Please set it in Settings.")
            config: ProviderConfig = AnthropicConfig(api_key=api_key)

        case Provider.LITELLM:
            base_url = await _read_setting(store, "litellm_base_url")
            if base_url is None:
                raise ProviderConfigError("LiteLLM base URL not configured. Please set it in Settings.")
            api_key = await _read_setting(store, "litellm_api_key")
            if api_key is None:
                raise ProviderConfigError("LiteLLM API key not configured. Please set it in Settings.")
            config = LiteLLMConfig(base_url=base_url, api_key=api_key)

    config.validate()
    return config
