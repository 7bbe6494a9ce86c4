from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import ValidationError

from streamjob.llm_client.cost import DEFAULT_MODEL_ID, calculate_cost
from streamjob.storage.kv_store import KeyValueStore
from streamjob.storage.models import (
    LimitCheckResult,
    LimitConfig,
    RecordedUsage,
    UsageBucket,
    UsageLedgerData,
    UsageSnapshot,
    UsageTrendEntry,
)
from streamjob.utils.error_taxonomy import build_error_details

logger = logging.getLogger("streamjob.usage")

DEFAULT_USAGE_KEY = "streamjob_usage"
DEFAULT_LIMITS_KEY = "streamjob_limits"

_LATIN_RE = re.compile(r"[a-zA-Z0-9\s]")
_CJK_RE = re.compile(r"[\u4e00-\u9fa5]")


class UsageLedger:
    """Token and cost meter aggregated per UTC day, per month and lifetime.

    Every mutation reads the whole ledger document, updates it in memory and
    writes it back in one ``set`` call, so the day, month and total buckets
    change together or not at all. There is no locking; a single writer is
    assumed.

    A missing or failing store never raises: reads fall back to an empty
    ledger and default limits, writes are dropped with a warning.
    """

    def __init__(
        self,
        *,
        store: KeyValueStore | None,
        pricing_config: dict[str, Any],
        usage_key: str = DEFAULT_USAGE_KEY,
        limits_key: str = DEFAULT_LIMITS_KEY,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.pricing_config = pricing_config
        self.usage_key = usage_key
        self.limits_key = limits_key
        self._clock = clock or _utc_now

    def get_usage_data(self) -> UsageLedgerData:
        stored = self._safe_get(self.usage_key)
        if stored is None:
            return UsageLedgerData()
        try:
            return UsageLedgerData.model_validate(stored)
        except ValidationError as error:
            logger.warning(
                "Stored usage ledger is malformed, starting from empty: %s", error
            )
            return UsageLedgerData()

    def get_limits(self) -> LimitConfig:
        stored = self._safe_get(self.limits_key)
        if stored is None:
            return LimitConfig()
        try:
            return LimitConfig.model_validate(stored)
        except ValidationError as error:
            logger.warning("Stored limits are malformed, using defaults: %s", error)
            return LimitConfig()

    def save_limits(self, limits: LimitConfig | dict[str, Any]) -> LimitConfig:
        config = (
            limits
            if isinstance(limits, LimitConfig)
            else LimitConfig.model_validate(limits)
        )
        self._safe_set(self.limits_key, config.model_dump(by_alias=True))
        return config

    def calculate_cost(
        self,
        input_tokens: int,
        output_tokens: int,
        model_id: str = DEFAULT_MODEL_ID,
    ) -> float:
        return calculate_cost(
            pricing_config=self.pricing_config,
            model=model_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def record_usage(
        self,
        input_tokens: int,
        output_tokens: int,
        model_id: str = DEFAULT_MODEL_ID,
    ) -> RecordedUsage:
        input_tokens = _token_count("input_tokens", input_tokens)
        output_tokens = _token_count("output_tokens", output_tokens)

        now = self._now()
        date_key = _date_key(now)
        month_key = _month_key(now)
        cost = self.calculate_cost(input_tokens, output_tokens, model_id)

        data = self.get_usage_data()
        for bucket in (
            data.daily.setdefault(date_key, UsageBucket()),
            data.monthly.setdefault(month_key, UsageBucket()),
            data.total,
        ):
            bucket.add(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=cost,
            )
        self._safe_set(self.usage_key, data.model_dump(by_alias=True))

        logger.info(
            "Usage recorded",
            extra={
                "stage": "usage",
                "metrics": {
                    "model": model_id,
                    "input_tokens": input_tokens,
                    "output_tokens": output_tokens,
                    "cost": round(cost, 8),
                },
            },
        )
        return RecordedUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cost=cost,
        )

    def check_limits(self) -> LimitCheckResult:
        limits = self.get_limits()
        daily = self.get_today_usage()
        monthly = self.get_month_usage()
        daily_usage = _snapshot(daily)
        monthly_usage = _snapshot(monthly)

        if not limits.enabled:
            return LimitCheckResult(
                allowed=True,
                daily_usage=daily_usage,
                monthly_usage=monthly_usage,
            )

        errors: list[str] = []
        if daily.total_tokens >= limits.daily_tokens:
            errors.append(
                f"Daily token limit reached ({format_tokens(limits.daily_tokens)})"
            )
        if monthly.total_tokens >= limits.monthly_tokens:
            errors.append(
                f"Monthly token limit reached ({format_tokens(limits.monthly_tokens)})"
            )
        if daily.cost >= limits.daily_cost:
            errors.append(f"Daily cost limit reached (${limits.daily_cost:.2f})")
        if monthly.cost >= limits.monthly_cost:
            errors.append(f"Monthly cost limit reached (${limits.monthly_cost:.2f})")

        return LimitCheckResult(
            allowed=not errors,
            errors=errors,
            daily_usage=daily_usage,
            monthly_usage=monthly_usage,
        )

    def get_today_usage(self) -> UsageBucket:
        data = self.get_usage_data()
        return data.daily.get(_date_key(self._now())) or UsageBucket()

    def get_month_usage(self) -> UsageBucket:
        data = self.get_usage_data()
        return data.monthly.get(_month_key(self._now())) or UsageBucket()

    def get_usage_trend(self, days: int = 7) -> list[UsageTrendEntry]:
        data = self.get_usage_data()
        today = self._now().date()
        trend: list[UsageTrendEntry] = []

        for offset in range(days - 1, -1, -1):
            day = today - timedelta(days=offset)
            usage = data.daily.get(day.isoformat()) or UsageBucket()
            trend.append(
                UsageTrendEntry(
                    date=day.isoformat(),
                    label=f"{day.month}/{day.day}",
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    request_count=usage.request_count,
                    cost=usage.cost,
                )
            )

        return trend

    def clear_usage_data(self) -> None:
        if self.store is None:
            return
        try:
            self.store.delete(self.usage_key)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Failed to clear usage data: %s", build_error_details(error)
            )

    def _now(self) -> datetime:
        return self._clock().astimezone(timezone.utc)

    def _safe_get(self, key: str) -> Any | None:
        if self.store is None:
            return None
        try:
            return self.store.get(key)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Failed to read %s from store: %s", key, build_error_details(error)
            )
            return None

    def _safe_set(self, key: str, value: Any) -> None:
        if self.store is None:
            return
        try:
            self.store.set(key, value)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Failed to write %s to store: %s", key, build_error_details(error)
            )


def format_tokens(tokens: int | float) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)


def estimate_tokens(text: str | None) -> int:
    """Rough token estimate: ~4 chars/token for Latin text, ~1.5 for CJK."""
    if not text:
        return 0
    latin_chars = len(_LATIN_RE.findall(text))
    cjk_chars = len(_CJK_RE.findall(text))
    other_chars = len(text) - latin_chars - cjk_chars

    return math.ceil(latin_chars / 4 + cjk_chars / 1.5 + other_chars / 3)


def _snapshot(bucket: UsageBucket) -> UsageSnapshot:
    return UsageSnapshot(
        tokens=bucket.total_tokens,
        cost=bucket.cost,
        requests=bucket.request_count,
    )


def _date_key(moment: datetime) -> str:
    return moment.date().isoformat()


def _month_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m")


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _token_count(name: str, value: Any) -> int:
    """Whole, non-negative token count; integral floats such as 12.0 are accepted."""
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if value < 0:
        raise ValueError("Token counts must be non-negative")
    return value
