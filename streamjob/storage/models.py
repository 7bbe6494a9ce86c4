from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict

from pydantic import BaseModel, ConfigDict, Field


class UsageBucket(BaseModel):
    input_tokens: int = Field(default=0, alias="inputTokens")
    output_tokens: int = Field(default=0, alias="outputTokens")
    request_count: int = Field(default=0, alias="requestCount")
    cost: float = Field(default=0.0, alias="cumulativeCost")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, *, input_tokens: int, output_tokens: int, cost: float) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens
        self.request_count += 1
        self.cost += cost


class UsageLedgerData(BaseModel):
    daily: Dict[str, UsageBucket] = Field(default_factory=dict)
    monthly: Dict[str, UsageBucket] = Field(default_factory=dict)
    total: UsageBucket = Field(default_factory=UsageBucket)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LimitConfig(BaseModel):
    daily_tokens: int = Field(default=100_000, ge=0, alias="dailyTokens")
    monthly_tokens: int = Field(default=2_000_000, ge=0, alias="monthlyTokens")
    daily_cost: float = Field(default=1.0, ge=0, alias="dailyCost")
    monthly_cost: float = Field(default=10.0, ge=0, alias="monthlyCost")
    enabled: bool = False

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    tokens: int
    cost: float
    requests: int


@dataclass(frozen=True, slots=True)
class LimitCheckResult:
    allowed: bool
    errors: list[str] = field(default_factory=list)
    daily_usage: UsageSnapshot | None = None
    monthly_usage: UsageSnapshot | None = None


@dataclass(frozen=True, slots=True)
class RecordedUsage:
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: float


@dataclass(frozen=True, slots=True)
class UsageTrendEntry:
    date: str
    label: str
    input_tokens: int
    output_tokens: int
    request_count: int
    cost: float

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens
