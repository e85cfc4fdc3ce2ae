from __future__ import annotations

import base64
import binascii
import re
from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from backend.app.core.errors import ApiError, AttemptNotFound, ErrorCode
from backend.app.services.generation_orchestrator import GenerationOrchestrator
from backend.app.services.pricing import MODEL_SUMMARY, judge_model_ids
from backend.app.storage.schemas import Attempt, JudgeResult, RunOutcome, TokenUsage, UsageSummary

router = APIRouter(tags=["generation-runs"])

_DATA_URL_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,")


class GenerateRequest(BaseModel):
    image_data_url: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    selected_cells: list[str] = Field(default_factory=list)
    run_id: str | None = None
    attempt_count: int | None = Field(default=None, ge=1)
    judge_enabled: bool | None = None
    judge_model_id: str | None = None
    grid_rows: int | None = Field(default=None, ge=1)
    grid_cols: int | None = Field(default=None, ge=1)
    select_all_mode: bool = False
    original_filename: str = "image.png"


class AttemptResponse(BaseModel):
    attempt_id: str
    status: Literal["generating", "completed", "judging", "judged", "failed"]
    image_data_url: str | None = None
    generation_usage: TokenUsage | None = None
    generation_duration_ms: int | None = None
    judge_result: JudgeResult | None = None
    judge_usage: TokenUsage | None = None
    judge_duration_ms: int | None = None
    created_at: datetime
    completed_at: datetime | None = None


class RunResponse(BaseModel):
    run_id: str
    prompt: str
    selected_cells: list[str]
    judge_model_id: str
    select_all_mode: bool
    original_filename: str
    running: bool
    attempts: list[AttemptResponse]
    new_attempt_ids: list[str] = Field(default_factory=list)
    best_attempt_id: str | None = None
    failed_edit_calls: int = 0
    usage: UsageSummary
    invocation_usage: UsageSummary
    created_at: datetime


class CancelResponse(BaseModel):
    run_id: str
    cancelled_invocations: int


class DeleteResponse(BaseModel):
    run_id: str
    deleted: bool


class JudgeModelResponse(BaseModel):
    model_id: str
    name: str
    provider: str
    input_per_million_tokens: float
    cached_input_per_million_tokens: float
    output_per_million_tokens: float


def decode_image_data_url(value: str) -> bytes:
    payload = _DATA_URL_PREFIX.sub("", value.strip(), count=1)
    try:
        decoded = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ApiError(ErrorCode.INVALID_REQUEST, "image_data_url is not valid base64 image data.", status_code=400) from exc
    if not decoded:
        raise ApiError(ErrorCode.INVALID_REQUEST, "image_data_url is empty.", status_code=400)
    return decoded


def _to_data_url(image: bytes | None) -> str | None:
    if image is None:
        return None
    return f"data:image/png;base64,{base64.b64encode(image).decode('ascii')}"


def _attempt_response(attempt: Attempt) -> AttemptResponse:
    return AttemptResponse(
        attempt_id=attempt.attempt_id,
        status=attempt.status,
        image_data_url=_to_data_url(attempt.image),
        generation_usage=attempt.generation_usage,
        generation_duration_ms=attempt.generation_duration_ms,
        judge_result=attempt.judge_result,
        judge_usage=attempt.judge_usage,
        judge_duration_ms=attempt.judge_duration_ms,
        created_at=attempt.created_at,
        completed_at=attempt.completed_at,
    )


def _run_response(orchestrator: GenerationOrchestrator, outcome: RunOutcome) -> RunResponse:
    run = orchestrator.get_run(outcome.run_id)
    return RunResponse(
        run_id=run.run_id,
        prompt=run.prompt,
        selected_cells=run.selected_cells,
        judge_model_id=run.settings.judge_model_id,
        select_all_mode=run.settings.select_all_mode,
        original_filename=run.settings.original_filename,
        running=orchestrator.is_running(run.run_id),
        attempts=[_attempt_response(attempt) for attempt in outcome.attempts],
        new_attempt_ids=outcome.new_attempt_ids,
        best_attempt_id=outcome.best_attempt_id,
        failed_edit_calls=outcome.failed_edit_calls,
        usage=outcome.usage,
        invocation_usage=outcome.invocation_usage,
        created_at=run.created_at,
    )


@router.post("/generation-runs", response_model=RunResponse)
async def create_generation(payload: GenerateRequest, request: Request) -> RunResponse:
    orchestrator: GenerationOrchestrator = request.app.state.orchestrator
    outcome = await orchestrator.run_generation(
        run_id=payload.run_id,
        source_image=decode_image_data_url(payload.image_data_url),
        prompt=payload.prompt,
        selected_cells=payload.selected_cells,
        attempt_count=payload.attempt_count,
        judge_enabled=payload.judge_enabled,
        judge_model_id=payload.judge_model_id,
        grid_rows=payload.grid_rows,
        grid_cols=payload.grid_cols,
        select_all_mode=payload.select_all_mode,
        original_filename=payload.original_filename,
    )
    return _run_response(orchestrator, outcome)


@router.get("/generation-runs/{run_id}", response_model=RunResponse)
async def get_generation_run(run_id: str, request: Request) -> RunResponse:
    orchestrator: GenerationOrchestrator = request.app.state.orchestrator
    return _run_response(orchestrator, orchestrator.summarize(run_id))


@router.delete("/generation-runs/{run_id}", response_model=DeleteResponse)
async def delete_generation_run(run_id: str, request: Request) -> DeleteResponse:
    orchestrator: GenerationOrchestrator = request.app.state.orchestrator
    orchestrator.cancel(run_id)
    deleted = orchestrator.run_store.delete_run(run_id)
    return DeleteResponse(run_id=run_id, deleted=deleted)


@router.post("/generation-runs/{run_id}/cancel", response_model=CancelResponse)
async def cancel_generation_run(run_id: str, request: Request) -> CancelResponse:
    orchestrator: GenerationOrchestrator = request.app.state.orchestrator
    orchestrator.get_run(run_id)
    return CancelResponse(run_id=run_id, cancelled_invocations=orchestrator.cancel(run_id))


@router.post("/generation-runs/{run_id}/attempts/{attempt_id}/judge", response_model=AttemptResponse)
async def judge_attempt(run_id: str, attempt_id: str, request: Request) -> AttemptResponse:
    orchestrator: GenerationOrchestrator = request.app.state.orchestrator
    attempt = await orchestrator.judge_attempt(run_id=run_id, attempt_id=attempt_id)
    return _attempt_response(attempt)


@router.get("/generation-runs/{run_id}/attempts/{attempt_id}/image")
async def get_attempt_image(run_id: str, attempt_id: str, request: Request) -> Response:
    orchestrator: GenerationOrchestrator = request.app.state.orchestrator
    attempt = orchestrator.get_run(run_id).attempts.get(attempt_id)
    if attempt is None or attempt.image is None:
        raise AttemptNotFound(run_id, attempt_id)
    return Response(content=attempt.image, media_type="image/png")


@router.get("/judge-models", response_model=list[JudgeModelResponse])
async def list_judge_models() -> list[JudgeModelResponse]:
    models: list[JudgeModelResponse] = []
    for model_id in judge_model_ids():
        summary = MODEL_SUMMARY[model_id]
        models.append(
            JudgeModelResponse(
                model_id=summary.model_id,
                name=summary.name,
                provider=summary.provider,
                input_per_million_tokens=summary.pricing.input_per_million_tokens,
                cached_input_per_million_tokens=summary.pricing.cached_input_per_million_tokens,
                output_per_million_tokens=summary.pricing.output_per_million_tokens,
            )
        )
    return models
