from __future__ import annotations

import base64
import logging
import time
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from backend.app.core.config import Settings
from backend.app.core.errors import ErrorCode, JudgeCallFailed
from backend.app.services.capabilities import JudgeOutcome
from backend.app.services.image_edit_service import GEMINI_API_BASE
from backend.app.services.pricing import MODEL_SUMMARY
from backend.app.storage.schemas import JudgeResult, TokenUsage

logger = logging.getLogger("gridedit.backend.judge")

OPENAI_RESPONSES_URL = "https://api.openai.com/v1/responses"

CRITERIA = ("selected_areas_changed", "selected_areas_correct", "nothing_else_changed")


class JudgeVerdict(BaseModel):
    """Exact shape the judge model must answer with."""

    model_config = ConfigDict(extra="ignore")

    selected_areas_changed: int = Field(ge=1, le=10)
    selected_areas_correct: int = Field(ge=1, le=10)
    nothing_else_changed: int = Field(ge=1, le=10)
    score: int = Field(ge=1, le=10)
    reasoning: str = Field(min_length=1)

    def to_result(self) -> JudgeResult:
        return JudgeResult(
            overall_score=self.score,
            criteria={name: getattr(self, name) for name in CRITERIA},
            reasoning=self.reasoning.strip(),
        )


def build_judge_system_prompt(*, whole_image_mode: bool) -> str:
    if whole_image_mode:
        setup = "The user asked for the edit to apply to the entire image."
        changed = "Was the image actually changed?"
        preserved = "Are the overall structure and style preserved apart from the requested change?"
    else:
        setup = (
            "The first image carries blue borders around the cells selected for editing. "
            "The second image should have those cells changed and the borders removed."
        )
        changed = "Were the blue-bordered areas actually changed?"
        preserved = "Were the areas outside the selection left untouched?"

    return "\n".join(
        [
            "You judge whether an edited image follows the user's instructions.",
            setup,
            "Compare the original (first image) with the edited result (second image).",
            "Answer with a single JSON object and nothing else, using these keys:",
            f'- "selected_areas_changed" (integer 1-10): {changed}',
            '- "selected_areas_correct" (integer 1-10): Do the changes match the request?',
            f'- "nothing_else_changed" (integer 1-10): {preserved}',
            '- "score" (integer 1-10): the three scores averaged and rounded.',
            '- "reasoning" (string): a short explanation covering all three criteria.',
        ]
    )


class JudgeService:
    def __init__(self, settings: Settings):
        self.settings = settings

    async def judge(
        self,
        *,
        source_image: bytes,
        candidate_image: bytes,
        instructions: str,
        judge_model_id: str,
        whole_image_mode: bool,
    ) -> JudgeOutcome:
        summary = MODEL_SUMMARY.get(judge_model_id)
        if summary is None or summary.kind != "judge":
            raise JudgeCallFailed(
                f"Judge model '{judge_model_id}' is not available.",
                code=ErrorCode.INVALID_REQUEST,
                status_code=400,
            )

        system_prompt = build_judge_system_prompt(whole_image_mode=whole_image_mode)
        user_text = f'User\'s modification instructions: "{instructions}"'

        start = time.perf_counter()
        if summary.provider == "openai":
            raw_text, usage = await self._call_openai(
                model_id=judge_model_id,
                system_prompt=system_prompt,
                user_text=user_text,
                source_image=source_image,
                candidate_image=candidate_image,
            )
        else:
            raw_text, usage = await self._call_gemini(
                model_id=judge_model_id,
                system_prompt=system_prompt,
                user_text=user_text,
                source_image=source_image,
                candidate_image=candidate_image,
            )
        duration_ms = int((time.perf_counter() - start) * 1000)

        result = self.parse_verdict(raw_text)
        logger.info(
            "judge_completed",
            extra={
                "extra_fields": {
                    "model": judge_model_id,
                    "score": result.overall_score,
                    "duration_ms": duration_ms,
                }
            },
        )
        return JudgeOutcome(result=result, usage=usage, duration_ms=duration_ms)

    def parse_verdict(self, raw_text: str) -> JudgeResult:
        try:
            verdict = JudgeVerdict.model_validate_json(raw_text.strip())
        except ValidationError as exc:
            raise JudgeCallFailed(f"Judge returned a malformed verdict: {exc.error_count()} error(s).") from exc
        return verdict.to_result()

    async def _call_gemini(
        self,
        *,
        model_id: str,
        system_prompt: str,
        user_text: str,
        source_image: bytes,
        candidate_image: bytes,
    ) -> tuple[str, TokenUsage | None]:
        if not self.settings.google_api_key:
            raise JudgeCallFailed("GOOGLE_GENERATIVE_AI_API_KEY is missing.")

        payload = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": user_text},
                        {"inlineData": {"mimeType": "image/png", "data": _b64(source_image)}},
                        {"inlineData": {"mimeType": "image/png", "data": _b64(candidate_image)}},
                    ],
                }
            ],
            "generationConfig": {"responseMimeType": "application/json"},
        }
        body = await self._post_json(
            f"{GEMINI_API_BASE}/models/{model_id}:generateContent",
            payload=payload,
            headers={"x-goog-api-key": self.settings.google_api_key, "Content-Type": "application/json"},
        )

        texts: list[str] = []
        candidates = body.get("candidates", [])
        if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
            parts = candidates[0].get("content", {}).get("parts", [])
            if isinstance(parts, list):
                texts = [part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str)]
        if not texts:
            raise JudgeCallFailed("Judge response did not contain text output.")

        usage = None
        metadata = body.get("usageMetadata")
        if isinstance(metadata, dict):
            usage = TokenUsage(
                input_tokens=int(metadata.get("promptTokenCount", 0) or 0),
                output_tokens=int(metadata.get("candidatesTokenCount", 0) or 0),
                total_tokens=int(metadata.get("totalTokenCount", 0) or 0),
            )
        return "".join(texts), usage

    async def _call_openai(
        self,
        *,
        model_id: str,
        system_prompt: str,
        user_text: str,
        source_image: bytes,
        candidate_image: bytes,
    ) -> tuple[str, TokenUsage | None]:
        if not self.settings.openai_api_key:
            raise JudgeCallFailed("OPENAI_API_KEY is missing.")

        payload = {
            "model": model_id,
            "reasoning": {"effort": "minimal"},
            "text": {"format": {"type": "json_object"}},
            "input": [
                {"role": "system", "content": [{"type": "input_text", "text": system_prompt}]},
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": user_text},
                        {"type": "input_image", "image_url": f"data:image/png;base64,{_b64(source_image)}"},
                        {"type": "input_image", "image_url": f"data:image/png;base64,{_b64(candidate_image)}"},
                    ],
                },
            ],
        }
        body = await self._post_json(
            OPENAI_RESPONSES_URL,
            payload=payload,
            headers={
                "Authorization": f"Bearer {self.settings.openai_api_key}",
                "Content-Type": "application/json",
            },
        )

        usage = None
        usage_raw = body.get("usage")
        if isinstance(usage_raw, dict):
            usage = TokenUsage(
                input_tokens=int(usage_raw.get("input_tokens", 0) or 0),
                output_tokens=int(usage_raw.get("output_tokens", 0) or 0),
                total_tokens=int(usage_raw.get("total_tokens", 0) or 0),
            )
        return self._extract_openai_text(body), usage

    def _extract_openai_text(self, payload: dict[str, Any]) -> str:
        output_text = payload.get("output_text")
        if isinstance(output_text, str) and output_text.strip():
            return output_text

        output = payload.get("output", [])
        texts: list[str] = []
        if isinstance(output, list):
            for item in output:
                content = item.get("content", []) if isinstance(item, dict) else []
                if not isinstance(content, list):
                    continue
                for part in content:
                    if not isinstance(part, dict):
                        continue
                    if part.get("type") in {"output_text", "text"}:
                        text = part.get("text")
                        if isinstance(text, str):
                            texts.append(text)
        if texts:
            return "\n".join(texts)

        raise JudgeCallFailed("Judge response did not contain text output.")

    async def _post_json(self, url: str, *, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout_seconds) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise JudgeCallFailed(
                "Judge evaluation timed out.",
                code=ErrorCode.UPSTREAM_TIMEOUT,
                status_code=504,
            ) from exc
        except httpx.HTTPError as exc:
            raise JudgeCallFailed(f"Judge upstream HTTP error: {exc}") from exc

        if response.status_code >= 500:
            raise JudgeCallFailed("Judge upstream server error.")
        if response.status_code >= 400:
            raise JudgeCallFailed(f"Judge request failed ({response.status_code}).")

        try:
            body = response.json()
        except ValueError as exc:
            raise JudgeCallFailed("Judge response was not valid JSON.") from exc
        if not isinstance(body, dict):
            raise JudgeCallFailed("Judge response had an unexpected shape.")
        return body


def _b64(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")
