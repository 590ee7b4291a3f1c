"""Chat gateway, the only place that talks HTTP to an LLM provider.

Each call resolves the provider configuration from the settings store, sends
one request, and hands the raw body back. Response parsing is left to the
caller because its shape depends on the provider and on the tools offered.

Usage::

    gateway = ChatGateway(settings_store)
    model_id = await gateway.resolve_model("claude-sonnet-4-5")
    body = await gateway.complete(
        model_id,
        [ChatMessage(role="user", content="Hello")],
        system="Be brief.",
        max_tokens=1024,
    )
"""

from __future__ import annotations

from typing import Any, Literal

import httpx
from pydantic import BaseModel

from infra.model_catalog import ModelInfo, fetch_models, match_friendly_name
from infra.providers import (
    ProviderConfig,
    ProviderRequestError,
    SettingsReader,
    load_provider,
    load_provider_config,
)
from orcascore.core.logging import get_logger

logger = get_logger("infra.chat")

_CONNECTION_HINTS = {
    401: "Authentication failed. Check your API key.",
    403: "Access denied. Your API key may lack the required permissions.",
    404: "Endpoint not found. Check the base URL for your provider.",
}


class ChatMessage(BaseModel):
    """One conversation turn.

    ``content`` is either plain text or a list of structured blocks
    (``text``, ``tool_use``, ``tool_result``) in the provider's wire format.
    """

    role: Literal["user", "assistant"]
    content: str | list[dict[str, Any]]


class ChatGatewayError(ProviderRequestError):
    """A chat or connection request failed."""


class ChatGateway:
    """Provider-agnostic chat client.

    Args:
        store:       User settings store; read on every call.
        client:      Shared ``httpx.AsyncClient``. When omitted the gateway
                     creates one and closes it in :meth:`aclose`.
        env_api_key: Anthropic key from the environment, used when none is saved.
        timeout:     HTTP timeout in seconds for an owned client.
    """

    def __init__(
        self,
        store: SettingsReader,
        client: httpx.AsyncClient | None = None,
        env_api_key: str = "",
        timeout: float = 120.0,
    ) -> None:
        self._store = store
        self._env_api_key = env_api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _config(self) -> ProviderConfig:
        return await load_provider_config(self._store, env_api_key=self._env_api_key)

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def list_models(self) -> list[ModelInfo]:
        provider = await load_provider(self._store)
        config = await self._config()
        logger.debug("Fetching models from %s", config.models_endpoint)
        models = await fetch_models(self._client, provider, config)
        logger.info("Fetched %d models from %s", len(models), provider.value)
        return models

    async def resolve_model(self, friendly_name: str) -> str:
        """Map a friendly model name to the provider's full id (unknown names pass through)."""
        resolved = match_friendly_name(await self.list_models(), friendly_name)
        logger.info("Resolved model '%s' to '%s'", friendly_name, resolved)
        return resolved

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def complete(
        self,
        model: str,
        messages: list[ChatMessage],
        system: str | None = None,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
    ) -> str:
        """POST one chat request with an already-resolved model id.

        Returns:
            The raw response body.

        Raises:
            ProviderConfigError: provider settings are missing or invalid.
            ChatGatewayError: network failure or non-2xx status.
        """
        config = await self._config()

        body: dict[str, Any] = {
            "model": model,
            "messages": [m.model_dump() for m in messages],
            "max_tokens": max_tokens,
        }
        if system is not None:
            body["system"] = system
        if tools:
            logger.debug("Including %d tools in request for model '%s'", len(tools), model)
            body["tools"] = tools

        headers = {**config.headers(), "content-type": "application/json"}
        logger.debug("POST %s (model=%s, messages=%d)", config.endpoint, model, len(messages))
        try:
            response = await self._client.post(config.endpoint, json=body, headers=headers)
        except httpx.RequestError as exc:
            raise ChatGatewayError(f"Request failed: {exc}") from exc

        if not response.is_success:
            raise ChatGatewayError(
                f"API error ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )
        return response.text

    async def send_chat_message(
        self,
        model: str,
        messages: list[ChatMessage],
        system: str | None = None,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
    ) -> str:
        """Resolve ``model`` then :meth:`complete`; backs the front-end chat command."""
        resolved = await self.resolve_model(model)
        return await self.complete(resolved, messages, system=system, max_tokens=max_tokens, tools=tools)

    async def test_connection(self) -> str:
        """Check credentials and base URL by listing models.

        Returns:
            ``"Connection successful"``.

        Raises:
            ProviderConfigError: provider settings are missing or invalid.
            ChatGatewayError: with a human-readable cause.
        """
        config = await self._config()
        try:
            response = await self._client.get(config.models_endpoint, headers=config.headers())
        except httpx.RequestError as exc:
            raise ChatGatewayError(f"Connection failed: {exc}") from exc

        if not response.is_success:
            status = response.status_code
            message = _CONNECTION_HINTS.get(status) or f"API returned an error (HTTP {status}): {response.text}"
            raise ChatGatewayError(message, status_code=status)

        return "Connection successful"
