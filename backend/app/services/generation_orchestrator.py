from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from backend.app.core.config import Settings
from backend.app.core.errors import (
    ApiError,
    AttemptNotFound,
    EditCallFailed,
    ErrorCode,
    GenerationCancelled,
    InvalidStatusTransition,
    JudgeCallFailed,
    NoAttemptsProduced,
    RunNotFound,
)
from backend.app.services.capabilities import ImageEditCapability, JudgeCapability
from backend.app.services.image_edit_service import build_instructions
from backend.app.services.pricing import calculate_cost, judge_model_ids
from backend.app.storage.id_factory import new_attempt_id
from backend.app.storage.run_store import RunStore
from backend.app.storage.schemas import Attempt, Run, RunOutcome, RunSettings, TokenUsage, UsageSummary

logger = logging.getLogger("gridedit.backend.orchestrator")


def split_usage(usage: TokenUsage | None, parts: int) -> TokenUsage | None:
    """Divide one call's usage evenly across the images it returned.

    Each field is rounded half-up, so the per-image sums only approximate
    the reported call totals.
    """
    if usage is None or parts <= 1:
        return usage

    def share(value: int) -> int:
        return int(math.floor(value / parts + 0.5))

    return TokenUsage(
        input_tokens=share(usage.input_tokens),
        output_tokens=share(usage.output_tokens),
        total_tokens=share(usage.total_tokens),
    )


def select_best_attempt(attempts: Iterable[Attempt]) -> Attempt | None:
    """Highest judged score wins, earliest registration breaks ties.

    Without any judged attempt the earliest usable one is returned.
    """
    pool = list(attempts)
    judged = [a for a in pool if a.status == "judged" and a.judge_result is not None]
    if judged:
        return min(judged, key=lambda a: (-a.judge_result.overall_score, a.sequence))
    usable = [a for a in pool if a.image is not None and a.status != "failed"]
    if usable:
        return min(usable, key=lambda a: a.sequence)
    return None


def sort_attempts_for_display(attempts: Iterable[Attempt]) -> list[Attempt]:
    return sorted(attempts, key=lambda a: (a.score is None, -(a.score or 0), a.sequence))


def aggregate_usage(
    attempts: Iterable[Attempt],
    *,
    generation_model_id: str,
    judge_model_id: str,
) -> UsageSummary:
    pool = list(attempts)
    generation = sum((a.generation_usage for a in pool if a.generation_usage is not None), TokenUsage())
    judge = sum(
        (a.judge_usage for a in pool if a.status == "judged" and a.judge_usage is not None),
        TokenUsage(),
    )
    generation_cost = calculate_cost(generation, generation_model_id)
    judge_cost = calculate_cost(judge, judge_model_id)
    return UsageSummary(
        generation=generation,
        judge=judge,
        total=generation + judge,
        generation_cost_usd=generation_cost,
        judge_cost_usd=judge_cost,
        total_cost_usd=generation_cost + judge_cost,
    )


@dataclass
class GenerationHandle:
    """Cancellable reference to one orchestration started in the background."""

    run_id: str
    task: asyncio.Task[RunOutcome]
    _orchestrator: GenerationOrchestrator = field(repr=False)

    def cancel(self) -> bool:
        return self._orchestrator._request_cancel(self.task)

    def done(self) -> bool:
        return self.task.done()

    async def result(self) -> RunOutcome:
        try:
            return await self.task
        except asyncio.CancelledError:
            # cancelled before the orchestration got to run
            if self.task.cancelled():
                raise GenerationCancelled(self.run_id) from None
            raise


class GenerationOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        run_store: RunStore,
        image_edit: ImageEditCapability,
        judge: JudgeCapability,
    ):
        self.settings = settings
        self.run_store = run_store
        self.image_edit = image_edit
        self.judge = judge
        self._inflight: dict[str, set[asyncio.Task]] = {}
        self._cancel_requested: set[asyncio.Task] = set()

    # public API

    async def run_generation(
        self,
        *,
        source_image: bytes,
        prompt: str,
        run_id: str | None = None,
        selected_cells: Iterable[str] = (),
        attempt_count: int | None = None,
        judge_enabled: bool | None = None,
        judge_model_id: str | None = None,
        grid_rows: int | None = None,
        grid_cols: int | None = None,
        select_all_mode: bool = False,
        original_filename: str = "image.png",
    ) -> RunOutcome:
        actual_run_id, count, judging = self._prepare(
            source_image=source_image,
            prompt=prompt,
            run_id=run_id,
            selected_cells=selected_cells,
            attempt_count=attempt_count,
            judge_enabled=judge_enabled,
            judge_model_id=judge_model_id,
            grid_rows=grid_rows,
            grid_cols=grid_cols,
            select_all_mode=select_all_mode,
            original_filename=original_filename,
        )
        return await self._drive(actual_run_id, count, judging)

    def start_generation(
        self,
        *,
        source_image: bytes,
        prompt: str,
        run_id: str | None = None,
        selected_cells: Iterable[str] = (),
        attempt_count: int | None = None,
        judge_enabled: bool | None = None,
        judge_model_id: str | None = None,
        grid_rows: int | None = None,
        grid_cols: int | None = None,
        select_all_mode: bool = False,
        original_filename: str = "image.png",
    ) -> GenerationHandle:
        """Create or join the run now and drive it in a background task."""
        actual_run_id, count, judging = self._prepare(
            source_image=source_image,
            prompt=prompt,
            run_id=run_id,
            selected_cells=selected_cells,
            attempt_count=attempt_count,
            judge_enabled=judge_enabled,
            judge_model_id=judge_model_id,
            grid_rows=grid_rows,
            grid_cols=grid_cols,
            select_all_mode=select_all_mode,
            original_filename=original_filename,
        )
        task = asyncio.create_task(self._drive(actual_run_id, count, judging), name=f"generation:{actual_run_id}")
        self._track(actual_run_id, task)
        task.add_done_callback(lambda done: self._untrack(actual_run_id, done))
        return GenerationHandle(run_id=actual_run_id, task=task, _orchestrator=self)

    def cancel(self, run_id: str) -> int:
        """Cancel every in-flight invocation for ``run_id``; returns how many."""
        tasks = list(self._inflight.get(run_id, ()))
        cancelled = sum(1 for task in tasks if self._request_cancel(task))
        if cancelled:
            logger.info("generation_cancel_requested", extra={"run_id": run_id, "extra_fields": {"invocations": cancelled}})
        return cancelled

    def is_running(self, run_id: str) -> bool:
        return bool(self._inflight.get(run_id))

    async def judge_attempt(self, *, run_id: str, attempt_id: str) -> Attempt:
        run = self.run_store.get_run(run_id)
        attempt = run.attempts.get(attempt_id)
        if attempt is None:
            raise AttemptNotFound(run_id, attempt_id)
        if attempt.status != "completed" or attempt.image is None:
            raise InvalidStatusTransition(attempt_id, attempt.status, "judging")
        self._validate_judge_model(run.settings.judge_model_id)

        await self._judge_and_finalize(run, attempt_id, attempt.image, on_demand=True)
        return self.run_store.get_run(run_id).attempts[attempt_id]

    def get_run(self, run_id: str) -> Run:
        return self.run_store.get_run(run_id)

    def summarize(
        self,
        run_id: str,
        *,
        new_attempt_ids: Iterable[str] = (),
        failed_edit_calls: int = 0,
    ) -> RunOutcome:
        run = self.run_store.get_run(run_id)
        new_ids = [attempt_id for attempt_id in new_attempt_ids if attempt_id in run.attempts]
        attempts = list(run.attempts.values())
        best = select_best_attempt(attempts)
        models = {
            "generation_model_id": self.settings.generation_model_id,
            "judge_model_id": run.settings.judge_model_id,
        }
        return RunOutcome(
            run_id=run.run_id,
            attempts=sort_attempts_for_display(attempts),
            new_attempt_ids=new_ids,
            best_attempt_id=best.attempt_id if best else None,
            usage=aggregate_usage(attempts, **models),
            invocation_usage=aggregate_usage((run.attempts[attempt_id] for attempt_id in new_ids), **models),
            failed_edit_calls=failed_edit_calls,
        )

    # orchestration

    def _prepare(
        self,
        *,
        source_image: bytes,
        prompt: str,
        run_id: str | None = None,
        selected_cells: Iterable[str] = (),
        attempt_count: int | None = None,
        judge_enabled: bool | None = None,
        judge_model_id: str | None = None,
        grid_rows: int | None = None,
        grid_cols: int | None = None,
        select_all_mode: bool = False,
        original_filename: str = "image.png",
    ) -> tuple[str, int, bool]:
        count = self._resolve_attempt_count(attempt_count)
        judging = self.settings.use_judges if judge_enabled is None else judge_enabled
        requested_model = judge_model_id or self.settings.default_judge_model_id

        # Nothing is stored for a rejected request.
        existing = self._find_run(run_id)
        if existing is not None:
            if judging:
                self._validate_judge_model(existing.settings.judge_model_id)
        elif judging or judge_model_id is not None:
            self._validate_judge_model(requested_model)

        settings = RunSettings(
            judge_model_id=requested_model,
            grid_rows=grid_rows,
            grid_cols=grid_cols,
            select_all_mode=select_all_mode,
            original_filename=original_filename or "image.png",
        )
        actual_run_id, created = self.run_store.create_or_get_run(
            run_id=run_id,
            source_image=source_image,
            prompt=prompt,
            selected_cells=list(selected_cells),
            settings=settings,
        )
        if judging and not created and existing is None:
            # Joined a run created concurrently; it keeps its own judge model.
            self._validate_judge_model(self.run_store.get_run(actual_run_id).settings.judge_model_id)
        return actual_run_id, count, judging

    async def _drive(self, run_id: str, count: int, judging: bool) -> RunOutcome:
        current = asyncio.current_task()
        self._track(run_id, current)
        try:
            run = self.run_store.get_run(run_id)
            instructions = build_instructions(
                prompt=run.prompt,
                whole_image_mode=run.settings.select_all_mode,
                images_per_call=self.settings.images_per_llm_call,
            )
            logger.info(
                "generation_started",
                extra={"run_id": run_id, "extra_fields": {"edit_calls": count, "judging": judging}},
            )

            tasks = [
                asyncio.create_task(
                    self._edit_call(run, instructions, judging, call_index=index),
                    name=f"edit:{run_id}:{index}",
                )
                for index in range(count)
            ]
            try:
                results = await asyncio.gather(*tasks, return_exceptions=True)
            except asyncio.CancelledError:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                logger.info("generation_cancelled", extra={"run_id": run_id})
                if current in self._cancel_requested:
                    current.uncancel()
                    raise GenerationCancelled(run_id) from None
                raise

            new_attempt_ids: list[str] = []
            failed_calls = 0
            for result in results:
                if isinstance(result, EditCallFailed):
                    failed_calls += 1
                elif isinstance(result, BaseException):
                    raise result
                else:
                    new_attempt_ids.extend(result)

            if not new_attempt_ids:
                logger.warning(
                    "generation_produced_no_attempts",
                    extra={"run_id": run_id, "extra_fields": {"failed_edit_calls": failed_calls}},
                )
                raise NoAttemptsProduced(run_id, failed_calls)

            outcome = self.summarize(run_id, new_attempt_ids=new_attempt_ids, failed_edit_calls=failed_calls)
            logger.info(
                "generation_finished",
                extra={
                    "run_id": run_id,
                    "extra_fields": {
                        "new_attempts": len(new_attempt_ids),
                        "failed_edit_calls": failed_calls,
                        "best_attempt_id": outcome.best_attempt_id,
                        "total_tokens": outcome.invocation_usage.total.total_tokens,
                    },
                },
            )
            return outcome
        finally:
            self._untrack(run_id, current)

    async def _edit_call(self, run: Run, instructions: str, judging: bool, *, call_index: int) -> list[str]:
        start = time.perf_counter()
        try:
            result = await self.image_edit.edit(
                source_image=run.source_image,
                instructions=instructions,
                whole_image_mode=run.settings.select_all_mode,
            )
            if not result.images:
                raise EditCallFailed("Image edit returned no images.")
        except Exception as exc:
            error = exc if isinstance(exc, EditCallFailed) else EditCallFailed(f"Image edit failed: {exc}")
            logger.warning(
                "edit_call_failed",
                extra={
                    "run_id": run.run_id,
                    "extra_fields": {"call_index": call_index, "code": error.code.value, "error": error.message},
                },
            )
            if error is exc:
                raise
            raise error from exc

        duration_ms = result.duration_ms
        if duration_ms is None:
            duration_ms = int((time.perf_counter() - start) * 1000)
        usage = split_usage(result.usage, len(result.images))

        registered: list[tuple[str, bytes]] = []
        for image in result.images:
            attempt = self.run_store.register_attempt(
                run_id=run.run_id,
                attempt_id=new_attempt_id(),
                image=image,
                usage=usage,
                duration_ms=duration_ms,
                initial_status="completed",
            )
            registered.append((attempt.attempt_id, image))

        if judging:
            # Every judge settles before the first failure is raised.
            results = await asyncio.gather(
                *(self._judge_and_finalize(run, attempt_id, image) for attempt_id, image in registered),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
        return [attempt_id for attempt_id, _ in registered]

    async def _judge_and_finalize(self, run: Run, attempt_id: str, image: bytes, *, on_demand: bool = False) -> None:
        """Judge one attempt and record the verdict.

        A failed judge call reverts the attempt to ``completed``. During a
        generation the failure is only logged; an on-demand request re-raises
        it. An attempt already claimed by another judge is skipped during a
        generation and rejected on demand.
        """
        try:
            self.run_store.update_attempt_status(run_id=run.run_id, attempt_id=attempt_id, new_status="judging")
        except InvalidStatusTransition:
            if on_demand:
                raise
            logger.info("judge_skipped_attempt_claimed", extra={"run_id": run.run_id, "extra_fields": {"attempt_id": attempt_id}})
            return

        try:
            outcome = await self.judge.judge(
                source_image=run.source_image,
                candidate_image=image,
                instructions=run.prompt,
                judge_model_id=run.settings.judge_model_id,
                whole_image_mode=run.settings.select_all_mode,
            )
        except asyncio.CancelledError:
            self._fall_back_to_completed(run.run_id, attempt_id)
            raise
        except Exception as exc:
            error = exc if isinstance(exc, JudgeCallFailed) else JudgeCallFailed(f"Judge failed: {exc}")
            logger.warning(
                "judge_call_failed",
                extra={
                    "run_id": run.run_id,
                    "extra_fields": {"attempt_id": attempt_id, "code": error.code.value, "error": error.message},
                },
            )
            self._fall_back_to_completed(run.run_id, attempt_id)
            if not on_demand:
                return
            if error is exc:
                raise
            raise error from exc

        self.run_store.finalize_judging(
            run_id=run.run_id,
            attempt_id=attempt_id,
            judge_result=outcome.result,
            judge_usage=outcome.usage,
            judge_duration_ms=outcome.duration_ms,
        )

    def _fall_back_to_completed(self, run_id: str, attempt_id: str) -> None:
        try:
            self.run_store.update_attempt_status(run_id=run_id, attempt_id=attempt_id, new_status="completed")
        except RunNotFound:
            logger.warning("judge_fallback_run_evicted", extra={"run_id": run_id, "extra_fields": {"attempt_id": attempt_id}})

    # helpers

    def _resolve_attempt_count(self, attempt_count: int | None) -> int:
        count = self.settings.default_llm_calls_per_run if attempt_count is None else attempt_count
        if not self.settings.min_llm_calls_per_run <= count <= self.settings.max_llm_calls_per_run:
            raise ApiError(
                ErrorCode.INVALID_REQUEST,
                (
                    f"attempt_count must be between {self.settings.min_llm_calls_per_run} "
                    f"and {self.settings.max_llm_calls_per_run}."
                ),
                status_code=400,
            )
        return count

    def _find_run(self, run_id: str | None) -> Run | None:
        if run_id is None:
            return None
        try:
            return self.run_store.get_run(run_id)
        except RunNotFound:
            return None

    def _validate_judge_model(self, judge_model_id: str) -> None:
        if judge_model_id not in judge_model_ids():
            raise ApiError(
                ErrorCode.INVALID_REQUEST,
                f"Judge model '{judge_model_id}' is not available. Available models: {', '.join(judge_model_ids())}.",
                status_code=400,
            )

    def _track(self, run_id: str, task: asyncio.Task | None) -> None:
        if task is not None:
            self._inflight.setdefault(run_id, set()).add(task)

    def _untrack(self, run_id: str, task: asyncio.Task | None) -> None:
        if task is None:
            return
        self._cancel_requested.discard(task)
        tasks = self._inflight.get(run_id)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            del self._inflight[run_id]

    def _request_cancel(self, task: asyncio.Task) -> bool:
        if task.done():
            return False
        self._cancel_requested.add(task)
        return task.cancel()
