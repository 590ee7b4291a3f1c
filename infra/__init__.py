"""OrcaScore infrastructure layer: LLM provider access.

All outbound LLM traffic (chat completions, model listing, connection checks)
goes through this package. Use :class:`~infra.chat.ChatGateway`.

Quick start::

    from infra import ChatGateway, ChatMessage

    gateway = ChatGateway(settings_store)
    print(await gateway.test_connection())
    model_id = await gateway.resolve_model("claude-sonnet-4-5")
    raw = await gateway.complete(model_id, [ChatMessage(role="user", content="Hi")])
"""

from infra.chat import ChatGateway, ChatGatewayError, ChatMessage
from infra.model_catalog import ModelCatalogError, ModelInfo, derive_friendly_name
from infra.providers import (
    AnthropicConfig,
    LiteLLMConfig,
    Provider,
    ProviderCapabilities,
    ProviderConfig,
    ProviderConfigError,
    ProviderRequestError,
    load_provider_config,
)

__all__ = [
    # Providers
    "Provider",
    "ProviderCapabilities",
    "ProviderConfig",
    "AnthropicConfig",
    "LiteLLMConfig",
    "load_provider_config",
    # Models
    "ModelInfo",
    "derive_friendly_name",
    # Gateway
    "ChatGateway",
    "ChatMessage",
    # Errors
    "ProviderConfigError",
    "ProviderRequestError",
    "ModelCatalogError",
    "ChatGatewayError",
]
