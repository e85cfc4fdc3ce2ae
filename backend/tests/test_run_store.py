from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.core.errors import AttemptNotFound, InvalidStatusTransition, RunNotFound
from backend.app.storage.run_store import RunStore
from backend.app.storage.schemas import JudgeResult, RunSettings, TokenUsage

TTL_SECONDS = 3600.0


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 2, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_store(clock: FakeClock | None = None, **kwargs) -> RunStore:
    return RunStore(max_age_seconds=TTL_SECONDS, clock=clock or FakeClock(), **kwargs)


def make_run(store: RunStore, run_id: str | None = None, prompt: str = "make the sky purple") -> str:
    actual_run_id, _ = store.create_or_get_run(
        run_id=run_id,
        source_image=b"source",
        prompt=prompt,
        selected_cells=["A1", "B2"],
        settings=RunSettings(judge_model_id="gemini-2.5-flash"),
    )
    return actual_run_id


def add_attempt(store: RunStore, run_id: str, attempt_id: str = "att_1") -> None:
    store.register_attempt(
        run_id=run_id,
        attempt_id=attempt_id,
        image=b"candidate",
        usage=TokenUsage(input_tokens=10, output_tokens=5, total_tokens=15),
        duration_ms=120,
    )


def test_create_generates_time_ordered_id() -> None:
    store = make_store()
    first = make_run(store)
    second = make_run(store)

    assert first.startswith("run_")
    assert first != second
    assert first[:16] <= second[:16]


def test_create_with_existing_id_joins_without_overwriting() -> None:
    store = make_store()
    make_run(store, run_id="run_client", prompt="first prompt")

    run_id, created = store.create_or_get_run(
        run_id="run_client",
        source_image=b"other",
        prompt="second prompt",
        selected_cells=[],
        settings=RunSettings(judge_model_id="gpt-5-mini"),
    )

    assert run_id == "run_client"
    assert created is False
    run = store.get_run("run_client")
    assert run.prompt == "first prompt"
    assert run.source_image == b"source"
    assert run.settings.judge_model_id == "gemini-2.5-flash"


def test_concurrent_creation_with_same_id_creates_one_run() -> None:
    store = make_store()
    workers = 8
    barrier = threading.Barrier(workers)

    def create(index: int) -> tuple[str, bool]:
        barrier.wait()
        return store.create_or_get_run(
            run_id="run_race",
            source_image=f"payload-{index}".encode(),
            prompt=f"prompt {index}",
            selected_cells=[],
            settings=RunSettings(judge_model_id="gemini-2.5-flash"),
        )

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(create, range(workers)))

    assert {run_id for run_id, _ in results} == {"run_race"}
    assert sum(1 for _, created in results if created) == 1
    assert len(store) == 1


def test_get_run_returns_detached_copy() -> None:
    store = make_store()
    run_id = make_run(store)
    add_attempt(store, run_id)

    snapshot = store.get_run(run_id)
    snapshot.attempts["att_1"].status = "failed"
    snapshot.attempts.clear()

    assert store.get_run(run_id).attempts["att_1"].status == "completed"


def test_unknown_ids_raise_typed_errors() -> None:
    store = make_store()
    run_id = make_run(store)

    with pytest.raises(RunNotFound):
        store.get_run("run_missing")
    with pytest.raises(RunNotFound):
        add_attempt(store, "run_missing")
    with pytest.raises(AttemptNotFound):
        store.update_attempt_status(run_id=run_id, attempt_id="att_missing", new_status="judging")
    with pytest.raises(AttemptNotFound):
        store.finalize_judging(
            run_id=run_id,
            attempt_id="att_missing",
            judge_result=JudgeResult(overall_score=5, reasoning="ok"),
            judge_usage=None,
            judge_duration_ms=None,
        )


def test_register_assigns_increasing_sequence() -> None:
    store = make_store()
    run_id = make_run(store)
    add_attempt(store, run_id, "att_a")
    add_attempt(store, run_id, "att_b")

    attempts = store.get_run(run_id).attempts
    assert attempts["att_a"].sequence < attempts["att_b"].sequence
    assert attempts["att_a"].completed_at is not None


def test_status_moves_forward_through_judging() -> None:
    store = make_store()
    run_id = make_run(store)
    add_attempt(store, run_id)

    store.update_attempt_status(run_id=run_id, attempt_id="att_1", new_status="judging")
    judged = store.finalize_judging(
        run_id=run_id,
        attempt_id="att_1",
        judge_result=JudgeResult(overall_score=8, criteria={"nothing_else_changed": 9}, reasoning="clean"),
        judge_usage=TokenUsage(input_tokens=3, output_tokens=2, total_tokens=5),
        judge_duration_ms=40,
    )

    assert judged.status == "judged"
    assert judged.judge_result is not None and judged.judge_result.overall_score == 8
    assert judged.judge_duration_ms == 40


def test_judging_can_fall_back_to_completed() -> None:
    store = make_store()
    run_id = make_run(store)
    add_attempt(store, run_id)

    store.update_attempt_status(run_id=run_id, attempt_id="att_1", new_status="judging")
    attempt = store.update_attempt_status(run_id=run_id, attempt_id="att_1", new_status="completed")

    assert attempt.status == "completed"
    assert attempt.judge_result is None


@pytest.mark.parametrize(
    ("path", "rejected"),
    [
        ([], "judged"),
        ([], "generating"),
        (["judging"], "generating"),
        (["failed"], "completed"),
    ],
)
def test_backward_and_skipping_transitions_are_rejected(path: list[str], rejected: str) -> None:
    store = make_store()
    run_id = make_run(store)
    add_attempt(store, run_id)
    for status in path:
        store.update_attempt_status(run_id=run_id, attempt_id="att_1", new_status=status)

    with pytest.raises(InvalidStatusTransition):
        store.update_attempt_status(run_id=run_id, attempt_id="att_1", new_status=rejected)


def test_judged_attempt_is_final() -> None:
    store = make_store()
    run_id = make_run(store)
    add_attempt(store, run_id)
    store.update_attempt_status(run_id=run_id, attempt_id="att_1", new_status="judging")
    store.finalize_judging(
        run_id=run_id,
        attempt_id="att_1",
        judge_result=JudgeResult(overall_score=6, reasoning="fine"),
        judge_usage=None,
        judge_duration_ms=None,
    )

    with pytest.raises(InvalidStatusTransition):
        store.update_attempt_status(run_id=run_id, attempt_id="att_1", new_status="completed")


def test_attempt_without_image_cannot_be_judged() -> None:
    store = make_store()
    run_id = make_run(store)
    store.register_attempt(
        run_id=run_id,
        attempt_id="att_empty",
        image=None,
        usage=None,
        duration_ms=None,
        initial_status="generating",
    )

    with pytest.raises(InvalidStatusTransition):
        store.finalize_judging(
            run_id=run_id,
            attempt_id="att_empty",
            judge_result=JudgeResult(overall_score=5, reasoning="n/a"),
            judge_usage=None,
            judge_duration_ms=None,
        )


def test_delete_is_idempotent() -> None:
    store = make_store()
    run_id = make_run(store)

    assert store.delete_run(run_id) is True
    assert store.delete_run(run_id) is False
    with pytest.raises(RunNotFound):
        store.get_run(run_id)


def test_run_expires_exactly_after_ttl() -> None:
    clock = FakeClock()
    store = make_store(clock)
    run_id = make_run(store)

    clock.advance(TTL_SECONDS - 1)
    assert store.get_run(run_id).run_id == run_id

    clock.advance(2)
    with pytest.raises(RunNotFound):
        store.get_run(run_id)


def test_eviction_ignores_in_progress_judging() -> None:
    clock = FakeClock()
    store = make_store(clock)
    old_run = make_run(store)
    add_attempt(store, old_run)
    store.update_attempt_status(run_id=old_run, attempt_id="att_1", new_status="judging")

    clock.advance(TTL_SECONDS / 2)
    young_run = make_run(store)
    clock.advance(TTL_SECONDS / 2 + 1)

    assert store.evict_expired() == [old_run]
    assert [run.run_id for run in store.list_runs()] == [young_run]
    with pytest.raises(RunNotFound):
        store.finalize_judging(
            run_id=old_run,
            attempt_id="att_1",
            judge_result=JudgeResult(overall_score=7, reasoning="late"),
            judge_usage=None,
            judge_duration_ms=None,
        )


def test_expired_run_id_can_be_recreated() -> None:
    clock = FakeClock()
    store = make_store(clock)
    make_run(store, run_id="run_reuse", prompt="old")
    clock.advance(TTL_SECONDS + 1)

    _, created = store.create_or_get_run(
        run_id="run_reuse",
        source_image=b"new",
        prompt="new",
        selected_cells=[],
        settings=RunSettings(judge_model_id="gemini-2.5-flash"),
    )

    assert created is True
    assert store.get_run("run_reuse").prompt == "new"


@pytest.mark.asyncio
async def test_background_sweeper_evicts_and_stops() -> None:
    clock = FakeClock()
    store = make_store(clock, cleanup_interval_seconds=0.01)
    make_run(store)
    clock.advance(TTL_SECONDS + 1)

    store.start()
    assert store.running
    for _ in range(50):
        if len(store) == 0:
            break
        await asyncio.sleep(0.01)
    await store.stop()

    assert len(store) == 0
    assert not store.running
