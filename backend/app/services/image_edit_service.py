from __future__ import annotations

import base64
import logging
import time
from typing import Any

import httpx

from backend.app.core.config import Settings
from backend.app.core.errors import EditCallFailed, ErrorCode
from backend.app.services.capabilities import EditResult
from backend.app.storage.schemas import TokenUsage

logger = logging.getLogger("gridedit.backend.image_edit")

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

BASE_INSTRUCTIONS = (
    "Modify the image according to the user's instructions.\n\n"
    "When the user asks to remove an object, replace it with background inferred from the "
    "surrounding area so the result blends in seamlessly.\n\n"
    "Match lighting, shadows, textures, and color grading so edits look native to the image."
)

BORDER_INSTRUCTIONS = (
    "RULES FOR BLUE BORDERS:\n"
    "- Only modify pixels inside the blue-bordered cells.\n"
    "- Remove every blue border from the output; they are guides only.\n"
    "- Leave everything outside the blue borders untouched."
)


def build_instructions(*, prompt: str, whole_image_mode: bool, images_per_call: int = 1) -> str:
    parts = [BASE_INSTRUCTIONS]
    if not whole_image_mode:
        parts.append(BORDER_INSTRUCTIONS)
    if images_per_call > 1:
        parts.append(
            f"Generate {images_per_call} distinct variations of the edit. Each one must follow the "
            "instructions accurately while differing in how the change is realized."
        )
    parts.append(f"USER REQUEST: {prompt}")
    return "\n\n".join(parts)


class ImageEditService:
    def __init__(self, settings: Settings):
        self.settings = settings

    async def edit(self, *, source_image: bytes, instructions: str, whole_image_mode: bool) -> EditResult:
        if not self.settings.google_api_key:
            raise EditCallFailed("GOOGLE_GENERATIVE_AI_API_KEY is missing.")

        payload = {
            "systemInstruction": {"parts": [{"text": instructions}]},
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {
                            "inlineData": {
                                "mimeType": "image/png",
                                "data": base64.b64encode(source_image).decode("ascii"),
                            }
                        }
                    ],
                }
            ],
            "generationConfig": {"responseModalities": ["IMAGE"]},
        }
        headers = {
            "x-goog-api-key": self.settings.google_api_key,
            "Content-Type": "application/json",
        }
        url = f"{GEMINI_API_BASE}/models/{self.settings.generation_model_id}:generateContent"

        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout_seconds) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise EditCallFailed(
                "Image edit timed out.",
                code=ErrorCode.UPSTREAM_TIMEOUT,
                status_code=504,
            ) from exc
        except httpx.HTTPError as exc:
            raise EditCallFailed(f"Image edit upstream HTTP error: {exc}") from exc
        duration_ms = int((time.perf_counter() - start) * 1000)

        if response.status_code >= 500:
            raise EditCallFailed("Image edit upstream server error.")
        if response.status_code >= 400:
            raise EditCallFailed(
                f"Image edit request failed ({response.status_code}){_upstream_detail(response)}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise EditCallFailed("Image edit response was not valid JSON.") from exc

        images = self._extract_images(body)
        if not images:
            raise EditCallFailed("No images were generated in the response.")

        logger.info(
            "image_edit_completed",
            extra={
                "extra_fields": {
                    "model": self.settings.generation_model_id,
                    "images": len(images),
                    "duration_ms": duration_ms,
                    "whole_image_mode": whole_image_mode,
                }
            },
        )
        return EditResult(images=images, usage=self._extract_usage(body), duration_ms=duration_ms)

    def _extract_images(self, body: dict[str, Any]) -> list[bytes]:
        images: list[bytes] = []
        candidates = body.get("candidates", [])
        if not isinstance(candidates, list):
            return images
        for candidate in candidates:
            content = candidate.get("content", {}) if isinstance(candidate, dict) else {}
            parts = content.get("parts", []) if isinstance(content, dict) else []
            if not isinstance(parts, list):
                continue
            for part in parts:
                inline = part.get("inlineData") if isinstance(part, dict) else None
                if not isinstance(inline, dict):
                    continue
                mime_type = str(inline.get("mimeType", ""))
                data = inline.get("data")
                if mime_type.startswith("image/") and isinstance(data, str) and data:
                    images.append(base64.b64decode(data))
        return images

    def _extract_usage(self, body: dict[str, Any]) -> TokenUsage | None:
        metadata = body.get("usageMetadata")
        if not isinstance(metadata, dict):
            return None
        return TokenUsage(
            input_tokens=int(metadata.get("promptTokenCount", 0) or 0),
            output_tokens=int(metadata.get("candidatesTokenCount", 0) or 0),
            total_tokens=int(metadata.get("totalTokenCount", 0) or 0),
        )


def _upstream_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        error_obj = body.get("error")
        if isinstance(error_obj, dict):
            message = error_obj.get("message")
            if isinstance(message, str) and message:
                return f": {message}"
    return ""
