from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from streamjob.config.providers import ProviderPreferences
from streamjob.config.settings import Settings, get_settings
from streamjob.llm_client.openai_stream_client import (
    ChatCompletionsService,
    OpenAIStreamClient,
)
from streamjob.logging import setup_logging
from streamjob.pipeline.job_controller import JobOutcome, StreamingJobController
from streamjob.storage.kv_store import KeyValueStore, SqliteKeyValueStore
from streamjob.storage.models import RecordedUsage
from streamjob.storage.usage_ledger import UsageLedger
from streamjob.utils.error_taxonomy import build_error_details

logger = logging.getLogger("streamjob.engine")


@dataclass(frozen=True, slots=True)
class Engine:
    settings: Settings
    store: KeyValueStore | None
    preferences: ProviderPreferences
    ledger: UsageLedger
    backend: OpenAIStreamClient
    controller: StreamingJobController

    def record_outcome_usage(self, outcome: JobOutcome | None) -> RecordedUsage | None:
        """Meter a settled job. Returns None when the provider reported no usage."""
        if outcome is None:
            return None
        prompt_tokens = outcome.usage.get("prompt_tokens")
        completion_tokens = outcome.usage.get("completion_tokens")
        if prompt_tokens is None and completion_tokens is None:
            return None
        return self.ledger.record_usage(
            prompt_tokens or 0,
            completion_tokens or 0,
            outcome.model or self.backend.model,
        )


def build_engine(
    settings: Settings | None = None,
    *,
    store: KeyValueStore | None = None,
    completions_service: ChatCompletionsService | None = None,
    configure_logging: bool = False,
) -> Engine:
    """Wire the store, ledger, provider preferences, backend and controller.

    The backend model is read from the saved provider preference once, so a
    preference saved later takes effect on the next ``build_engine`` call.
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(level=settings.log_level.upper())

    kv_store = store if store is not None else _open_store(settings)
    preferences = ProviderPreferences(
        store=kv_store,
        providers_config=settings.providers_config,
        default_provider=settings.default_provider,
        default_model=settings.default_model,
        store_key=settings.provider_store_key,
    )
    provider = preferences.get_provider(preferences.get_current_provider())
    base_url = (provider.base_url if provider else None) or settings.llm_base_url

    backend = OpenAIStreamClient(
        model=preferences.get_current_model(),
        api_key=settings.llm_api_key,
        base_url=base_url,
        timeout_seconds=settings.request_timeout_seconds,
        temperature=settings.temperature,
        completions_service=completions_service,
    )
    ledger = UsageLedger(
        store=kv_store,
        pricing_config=settings.pricing_config,
        usage_key=settings.usage_store_key,
        limits_key=settings.limits_store_key,
    )

    logger.info(
        "Engine ready",
        extra={
            "stage": "start",
            "metrics": {
                "model": backend.model,
                "persistent": kv_store is not None,
            },
        },
    )
    return Engine(
        settings=settings,
        store=kv_store,
        preferences=preferences,
        ledger=ledger,
        backend=backend,
        controller=StreamingJobController(backend=backend),
    )


def _open_store(settings: Settings) -> KeyValueStore | None:
    try:
        return SqliteKeyValueStore(settings.resolved_sqlite_path)
    except (sqlite3.Error, OSError) as error:
        logger.warning(
            "Persistent store unavailable, running without it: %s",
            build_error_details(error),
        )
        return None
