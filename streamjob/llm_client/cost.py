from __future__ import annotations

from typing import Any

DEFAULT_MODEL_ID = "deepseek-chat"


def resolve_model_pricing(
    *, pricing_config: dict[str, Any], model: str
) -> tuple[str, dict[str, float]]:
    """Return ``(priced_as, rates)``; unknown models use the default model's rates."""
    models = _collect_models(pricing_config)
    if model in models:
        return model, models[model]

    default_model = str(pricing_config.get("default_model") or DEFAULT_MODEL_ID)
    return default_model, models.get(default_model, {})


def calculate_cost(
    *,
    pricing_config: dict[str, Any],
    model: str,
    input_tokens: int,
    output_tokens: int,
) -> float:
    _, rates = resolve_model_pricing(pricing_config=pricing_config, model=model)
    input_rate = float(rates.get("input") or 0.0)
    output_rate = float(rates.get("output") or 0.0)

    return (input_tokens / 1_000_000) * input_rate + (
        output_tokens / 1_000_000
    ) * output_rate


def estimate_llm_cost(
    *,
    pricing_config: dict[str, Any],
    model: str,
    usage_normalized: dict[str, int | None],
) -> dict[str, Any]:
    prompt_tokens = usage_normalized.get("prompt_tokens") or 0
    completion_tokens = usage_normalized.get("completion_tokens") or 0
    priced_as, _ = resolve_model_pricing(pricing_config=pricing_config, model=model)

    llm_cost = calculate_cost(
        pricing_config=pricing_config,
        model=model,
        input_tokens=prompt_tokens,
        output_tokens=completion_tokens,
    )

    return {
        "llm_cost_usd": round(llm_cost, 8),
        "priced_as": priced_as,
        "currency": pricing_config.get("currency", "USD"),
        "pricing_version": pricing_config.get("updated_at", "unknown"),
    }


def _collect_models(pricing_config: dict[str, Any]) -> dict[str, dict[str, float]]:
    models: dict[str, dict[str, float]] = {}
    providers = pricing_config.get("llm", {})
    if not isinstance(providers, dict):
        return models

    for provider_pricing in providers.values():
        if not isinstance(provider_pricing, dict):
            continue
        provider_models = provider_pricing.get("models", {})
        if not isinstance(provider_models, dict):
            continue
        for model_id, rates in provider_models.items():
            if isinstance(rates, dict):
                models[str(model_id)] = rates

    return models
