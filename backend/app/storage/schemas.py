from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


AttemptStatus = Literal["generating", "completed", "judging", "judged", "failed"]

# failed is terminal; judging -> completed is the judge-failure fallback.
ALLOWED_STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "generating": frozenset({"completed", "failed"}),
    "completed": frozenset({"judging", "failed"}),
    "judging": frozenset({"judged", "completed", "failed"}),
    "judged": frozenset(),
    "failed": frozenset(),
}


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class JudgeResult(BaseModel):
    overall_score: int = Field(ge=1, le=10)
    criteria: dict[str, int] = Field(default_factory=dict)
    reasoning: str


class RunSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    judge_model_id: str
    grid_rows: int | None = None
    grid_cols: int | None = None
    select_all_mode: bool = False
    original_filename: str = "image.png"


class Attempt(BaseModel):
    attempt_id: str
    sequence: int
    status: AttemptStatus
    image: bytes | None = None
    generation_usage: TokenUsage | None = None
    generation_duration_ms: int | None = None
    judge_result: JudgeResult | None = None
    judge_usage: TokenUsage | None = None
    judge_duration_ms: int | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @property
    def score(self) -> int | None:
        if self.judge_result is None:
            return None
        return self.judge_result.overall_score


class Run(BaseModel):
    run_id: str
    source_image: bytes
    prompt: str
    selected_cells: list[str] = Field(default_factory=list)
    settings: RunSettings
    attempts: dict[str, Attempt] = Field(default_factory=dict)
    created_at: datetime


class UsageSummary(BaseModel):
    generation: TokenUsage = Field(default_factory=TokenUsage)
    judge: TokenUsage = Field(default_factory=TokenUsage)
    total: TokenUsage = Field(default_factory=TokenUsage)
    generation_cost_usd: float = 0.0
    judge_cost_usd: float = 0.0
    total_cost_usd: float = 0.0


class RunOutcome(BaseModel):
    run_id: str
    attempts: list[Attempt] = Field(default_factory=list)
    new_attempt_ids: list[str] = Field(default_factory=list)
    best_attempt_id: str | None = None
    usage: UsageSummary = Field(default_factory=UsageSummary)
    invocation_usage: UsageSummary = Field(default_factory=UsageSummary)
    failed_edit_calls: int = 0
