from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from backend.app.core.config import Settings
from backend.app.core.errors import ApiError, AttemptNotFound, ErrorCode, InvalidStatusTransition, RunNotFound
from backend.app.storage.id_factory import new_run_id
from backend.app.storage.schemas import (
    ALLOWED_STATUS_TRANSITIONS,
    Attempt,
    AttemptStatus,
    JudgeResult,
    Run,
    RunSettings,
    TokenUsage,
    utc_now,
)

logger = logging.getLogger("gridedit.backend.run_store")


class RunStore:
    """In-memory registry of generation runs with a hard TTL.

    Every mutation of a run or its attempts goes through this object and is
    serialized by a single lock. Reads hand out deep copies.

    The TTL is measured from ``created_at`` and ignores activity: a run that
    is still generating or judging when it expires is dropped anyway, and
    later writes against it raise ``RunNotFound``.
    """

    def __init__(
        self,
        *,
        max_age_seconds: float = 3600.0,
        cleanup_interval_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.max_age = timedelta(seconds=max_age_seconds)
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self._runs: dict[str, Run] = {}
        self._lock = threading.Lock()
        self._next_sequence = 1
        self._sweeper: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> RunStore:
        return cls(
            max_age_seconds=settings.run_max_age_seconds,
            cleanup_interval_seconds=settings.run_cleanup_interval_seconds,
        )

    # lifecycle

    def start(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever())
        logger.info(
            "run_store_sweeper_started",
            extra={"extra_fields": {"interval_seconds": self.cleanup_interval_seconds}},
        )

    async def stop(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        logger.info("run_store_sweeper_stopped")

    @property
    def running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                self.evict_expired()
            except Exception:
                logger.exception("run_store_sweep_failed")

    # runs

    def create_or_get_run(
        self,
        *,
        run_id: str | None,
        source_image: bytes,
        prompt: str,
        selected_cells: list[str],
        settings: RunSettings,
    ) -> tuple[str, bool]:
        with self._lock:
            if run_id:
                existing = self._live_run(run_id)
                if existing is not None:
                    logger.info("run_joined", extra={"run_id": run_id})
                    return run_id, False

            actual_run_id = run_id or new_run_id()
            self._runs[actual_run_id] = Run(
                run_id=actual_run_id,
                source_image=source_image,
                prompt=prompt,
                selected_cells=list(selected_cells),
                settings=settings,
                created_at=self._clock(),
            )
        logger.info("run_created", extra={"run_id": actual_run_id})
        return actual_run_id, True

    def get_run(self, run_id: str) -> Run:
        with self._lock:
            run = self._require_run(run_id)
            return run.model_copy(deep=True)

    def list_runs(self) -> list[Run]:
        with self._lock:
            runs = [run.model_copy(deep=True) for run in self._runs.values() if not self._is_expired(run)]
        runs.sort(key=lambda run: run.created_at, reverse=True)
        return runs

    def delete_run(self, run_id: str) -> bool:
        with self._lock:
            removed = self._runs.pop(run_id, None) is not None
        if removed:
            logger.info("run_deleted", extra={"run_id": run_id})
        return removed

    def evict_expired(self) -> list[str]:
        with self._lock:
            expired = [run_id for run_id, run in self._runs.items() if self._is_expired(run)]
            for run_id in expired:
                del self._runs[run_id]
        for run_id in expired:
            logger.info("run_evicted", extra={"run_id": run_id})
        return expired

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)

    # attempts

    def register_attempt(
        self,
        *,
        run_id: str,
        attempt_id: str,
        image: bytes | None,
        usage: TokenUsage | None,
        duration_ms: int | None,
        initial_status: AttemptStatus = "completed",
    ) -> Attempt:
        with self._lock:
            run = self._require_run(run_id)
            if attempt_id in run.attempts:
                raise ApiError(
                    ErrorCode.INVALID_REQUEST,
                    f"Attempt '{attempt_id}' already exists in run '{run_id}'.",
                    status_code=409,
                )
            if initial_status in {"completed", "judging", "judged"} and image is None:
                raise ApiError(
                    ErrorCode.INVALID_REQUEST,
                    f"Attempt '{attempt_id}' cannot be '{initial_status}' without an image.",
                    status_code=400,
                )
            now = self._clock()
            attempt = Attempt(
                attempt_id=attempt_id,
                sequence=self._next_sequence,
                status=initial_status,
                image=image,
                generation_usage=usage,
                generation_duration_ms=duration_ms,
                created_at=now,
                completed_at=now if initial_status == "completed" else None,
            )
            self._next_sequence += 1
            run.attempts[attempt_id] = attempt
            snapshot = attempt.model_copy(deep=True)

        logger.info(
            "attempt_registered",
            extra={
                "run_id": run_id,
                "extra_fields": {"attempt_id": attempt_id, "status": initial_status, "duration_ms": duration_ms},
            },
        )
        return snapshot

    def update_attempt_status(self, *, run_id: str, attempt_id: str, new_status: AttemptStatus) -> Attempt:
        with self._lock:
            attempt = self._require_attempt(run_id, attempt_id)
            self._check_transition(attempt, new_status)
            attempt.status = new_status
            if new_status == "completed" and attempt.completed_at is None:
                attempt.completed_at = self._clock()
            return attempt.model_copy(deep=True)

    def finalize_judging(
        self,
        *,
        run_id: str,
        attempt_id: str,
        judge_result: JudgeResult,
        judge_usage: TokenUsage | None,
        judge_duration_ms: int | None,
    ) -> Attempt:
        with self._lock:
            attempt = self._require_attempt(run_id, attempt_id)
            if attempt.image is None:
                raise InvalidStatusTransition(attempt_id, attempt.status, "judged")
            self._check_transition(attempt, "judged")
            attempt.judge_result = judge_result
            attempt.judge_usage = judge_usage
            attempt.judge_duration_ms = judge_duration_ms
            attempt.status = "judged"
            snapshot = attempt.model_copy(deep=True)

        logger.info(
            "attempt_judged",
            extra={
                "run_id": run_id,
                "extra_fields": {
                    "attempt_id": attempt_id,
                    "score": judge_result.overall_score,
                    "duration_ms": judge_duration_ms,
                },
            },
        )
        return snapshot

    # helpers; callers hold self._lock

    def _is_expired(self, run: Run) -> bool:
        return self._clock() - run.created_at > self.max_age

    def _live_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        if run is None:
            return None
        if self._is_expired(run):
            del self._runs[run_id]
            logger.info("run_evicted", extra={"run_id": run_id})
            return None
        return run

    def _require_run(self, run_id: str) -> Run:
        run = self._live_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def _require_attempt(self, run_id: str, attempt_id: str) -> Attempt:
        run = self._require_run(run_id)
        attempt = run.attempts.get(attempt_id)
        if attempt is None:
            raise AttemptNotFound(run_id, attempt_id)
        return attempt

    def _check_transition(self, attempt: Attempt, new_status: str) -> None:
        if new_status not in ALLOWED_STATUS_TRANSITIONS[attempt.status]:
            raise InvalidStatusTransition(attempt.attempt_id, attempt.status, new_status)
