from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from backend.app.storage.schemas import TokenUsage

ModelProvider = Literal["google", "openai"]
ModelKind = Literal["generation", "judge"]


@dataclass(frozen=True)
class ModelPricing:
    input_per_million_tokens: float
    cached_input_per_million_tokens: float
    output_per_million_tokens: float


@dataclass(frozen=True)
class ModelSummary:
    model_id: str
    name: str
    provider: ModelProvider
    kind: ModelKind
    pricing: ModelPricing


_ZERO_PRICING = ModelPricing(0.0, 0.0, 0.0)

MODEL_SUMMARY: dict[str, ModelSummary] = {
    summary.model_id: summary
    for summary in (
        ModelSummary(
            model_id="gemini-2.5-flash-image",
            name="Gemini 2.5 Flash Image",
            provider="google",
            kind="generation",
            pricing=ModelPricing(0.3, 0.0, 2.5),
        ),
        ModelSummary(
            model_id="gemini-2.5-flash",
            name="Gemini 2.5 Flash",
            provider="google",
            kind="judge",
            pricing=ModelPricing(0.3, 0.0, 2.5),
        ),
        ModelSummary(
            model_id="gpt-5-mini",
            name="GPT-5 Mini",
            provider="openai",
            kind="judge",
            pricing=ModelPricing(0.25, 0.025, 2.0),
        ),
        ModelSummary(
            model_id="gemini-3-pro-preview",
            name="Gemini 3 Pro Preview",
            provider="google",
            kind="judge",
            pricing=ModelPricing(0.5, 0.0, 1.5),
        ),
    )
}


def judge_model_ids() -> list[str]:
    return [model_id for model_id, summary in MODEL_SUMMARY.items() if summary.kind == "judge"]


def get_model_pricing(model_id: str | None) -> ModelPricing:
    summary = MODEL_SUMMARY.get(model_id or "")
    if summary is None:
        return _ZERO_PRICING
    return summary.pricing


def calculate_cost(usage: TokenUsage | None, model_id: str | None, cached_input_tokens: int = 0) -> float:
    """USD cost of ``usage`` for ``model_id``; unknown models cost nothing."""
    if usage is None:
        return 0.0
    pricing = get_model_pricing(model_id)
    return (
        usage.input_tokens / 1_000_000 * pricing.input_per_million_tokens
        + cached_input_tokens / 1_000_000 * pricing.cached_input_per_million_tokens
        + usage.output_tokens / 1_000_000 * pricing.output_per_million_tokens
    )
