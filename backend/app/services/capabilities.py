from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from backend.app.storage.schemas import JudgeResult, TokenUsage


@dataclass
class EditResult:
    images: list[bytes]
    usage: TokenUsage | None = None
    duration_ms: int | None = None


@dataclass
class JudgeOutcome:
    result: JudgeResult
    usage: TokenUsage | None = None
    duration_ms: int | None = None


class ImageEditCapability(Protocol):
    async def edit(self, *, source_image: bytes, instructions: str, whole_image_mode: bool) -> EditResult: ...


class JudgeCapability(Protocol):
    async def judge(
        self,
        *,
        source_image: bytes,
        candidate_image: bytes,
        instructions: str,
        judge_model_id: str,
        whole_image_mode: bool,
    ) -> JudgeOutcome: ...
