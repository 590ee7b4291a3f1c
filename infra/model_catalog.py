"""Model listing and friendly-name resolution.

Agents store short model names such as ``claude-sonnet-4-5``; providers want
a full snapshot id such as ``claude-sonnet-4-5-20250929``. The friendly name
of a snapshot id is the id with its trailing ``-YYYYMMDD`` stamp removed.
"""

from __future__ import annotations

import re
from typing import Any

import httpx
from pydantic import BaseModel

from infra.providers import Provider, ProviderConfig, ProviderRequestError

_DATE_SUFFIX = re.compile(r"-\d{8}$")


class ModelInfo(BaseModel):
    """One entry of the provider's model list."""

    id: str             # full snapshot id: "claude-sonnet-4-20250514"
    display_name: str   # friendly name:    "claude-sonnet-4"
    display_label: str  # human label:      "Claude Sonnet 4"


class ModelCatalogError(ProviderRequestError):
    """The model list could not be fetched or parsed."""


def derive_friendly_name(model_id: str) -> str:
    """Strip a trailing ``-YYYYMMDD`` snapshot suffix.

    >>> derive_friendly_name("claude-sonnet-4-5-20250929")
    'claude-sonnet-4-5'
    >>> derive_friendly_name("gpt-4o")
    'gpt-4o'
    """
    return _DATE_SUFFIX.sub("", model_id)


def _label_from_friendly(friendly: str) -> str:
    """``claude-sonnet-4`` -> ``Claude Sonnet 4``."""
    return " ".join(word[:1].upper() + word[1:] for word in friendly.replace("-", " ").split())


def parse_models(provider: Provider, payload: dict[str, Any]) -> list[ModelInfo]:
    """Turn a ``GET /v1/models`` payload into :class:`ModelInfo` entries.

    Anthropic returns ``display_name`` labels; LiteLLM (OpenAI format) only
    returns ids, so the label is derived from the friendly name.
    """
    entries = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        raise ModelCatalogError(f"Failed to parse {provider.value} models response: missing 'data' list")

    models: list[ModelInfo] = []
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
            raise ModelCatalogError(f"Failed to parse {provider.value} models response: entry without id")
        model_id = entry["id"]
        friendly = derive_friendly_name(model_id)
        if provider is Provider.ANTHROPIC:
            label = entry.get("display_name") or _label_from_friendly(friendly)
        else:
            label = _label_from_friendly(friendly)
        models.append(ModelInfo(id=model_id, display_name=friendly, display_label=label))
    return models


async def fetch_models(
    client: httpx.AsyncClient,
    provider: Provider,
    config: ProviderConfig,
) -> list[ModelInfo]:
    """GET the provider's model list.

    Raises:
        ModelCatalogError: network failure, non-2xx status, or malformed body.
    """
    try:
        response = await client.get(config.models_endpoint, headers=config.headers())
    except httpx.RequestError as exc:
        raise ModelCatalogError(f"Failed to fetch models: {exc}") from exc

    if not response.is_success:
        raise ModelCatalogError(
            f"Models API error ({response.status_code}): {response.text}",
            status_code=response.status_code,
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise ModelCatalogError(f"Failed to parse {provider.value} models response: {exc}") from exc
    return parse_models(provider, payload)


def match_friendly_name(models: list[ModelInfo], friendly_name: str) -> str:
    """Full id of the first model whose friendly name equals ``friendly_name``.

    Unknown names are returned unchanged: agents created before friendly names
    existed store full snapshot ids, which must keep working.
    """
    for model in models:
        if model.display_name == friendly_name:
            return model.id
    return friendly_name
