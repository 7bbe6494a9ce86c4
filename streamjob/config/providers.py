from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from streamjob.storage.kv_store import KeyValueStore
from streamjob.utils.error_taxonomy import build_error_details

logger = logging.getLogger("streamjob.storage")

DEFAULT_PROVIDER_KEY = "streamjob_provider"
FALLBACK_MODEL = "deepseek-chat"


@dataclass(frozen=True, slots=True)
class ProviderModel:
    id: str
    name: str


@dataclass(frozen=True, slots=True)
class ProviderInfo:
    id: str
    name: str
    base_url: str | None
    default_model: str
    models: list[ProviderModel]


class ProviderPreferences:
    """Selected provider and model, persisted as one document in the store."""

    def __init__(
        self,
        *,
        store: KeyValueStore | None,
        providers_config: dict[str, Any],
        default_provider: str = "deepseek",
        default_model: str = FALLBACK_MODEL,
        store_key: str = DEFAULT_PROVIDER_KEY,
    ) -> None:
        self.store = store
        self.default_provider = default_provider
        self.default_model = default_model
        self.store_key = store_key
        self._providers = _parse_providers(providers_config)

    def list_providers(self) -> list[ProviderInfo]:
        return list(self._providers.values())

    def get_provider(self, provider_id: str) -> ProviderInfo | None:
        return self._providers.get(provider_id)

    def get_current_provider(self) -> str:
        stored = self._load()
        provider = str(stored.get("provider") or "")
        if provider in self._providers:
            return provider
        return self.default_provider

    def get_current_model(self) -> str:
        stored = self._load()
        provider = self._providers.get(str(stored.get("provider") or ""))
        if provider is not None:
            return str(stored.get("model") or provider.default_model)

        default = self._providers.get(self.default_provider)
        if default is not None:
            return default.default_model
        return self.default_model

    def save_provider_config(self, provider: str, model: str) -> None:
        if provider not in self._providers:
            raise ValueError(f"Unknown provider: {provider}")
        if self.store is None:
            return
        try:
            self.store.set(self.store_key, {"provider": provider, "model": model})
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Failed to save provider config: %s", build_error_details(error)
            )

    def _load(self) -> dict[str, Any]:
        if self.store is None:
            return {}
        try:
            stored = self.store.get(self.store_key)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Failed to read provider config: %s", build_error_details(error)
            )
            return {}
        return stored if isinstance(stored, dict) else {}


def _parse_providers(providers_config: dict[str, Any]) -> dict[str, ProviderInfo]:
    providers: dict[str, ProviderInfo] = {}
    raw_providers = providers_config.get("llm_providers", {})
    if not isinstance(raw_providers, dict):
        return providers

    for provider_id, raw in raw_providers.items():
        if not isinstance(raw, dict):
            continue
        models = [
            ProviderModel(
                id=str(item["id"]),
                name=str(item.get("name") or item["id"]),
            )
            for item in raw.get("models") or []
            if isinstance(item, dict) and item.get("id")
        ]
        default_model = str(
            raw.get("default_model") or (models[0].id if models else FALLBACK_MODEL)
        )
        providers[str(provider_id)] = ProviderInfo(
            id=str(provider_id),
            name=str(raw.get("name") or provider_id),
            base_url=raw.get("base_url"),
            default_model=default_model,
            models=models,
        )

    return providers
