from __future__ import annotations

from enum import Enum

from fastapi import Request
from fastapi.responses import JSONResponse


class ErrorCode(str, Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    RUN_NOT_FOUND = "RUN_NOT_FOUND"
    ATTEMPT_NOT_FOUND = "ATTEMPT_NOT_FOUND"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    EDIT_CALL_FAILED = "EDIT_CALL_FAILED"
    JUDGE_CALL_FAILED = "JUDGE_CALL_FAILED"
    NO_ATTEMPTS_PRODUCED = "NO_ATTEMPTS_PRODUCED"
    GENERATION_CANCELLED = "GENERATION_CANCELLED"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ApiError(Exception):
    def __init__(self, code: ErrorCode, message: str, status_code: int = 400):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class RunNotFound(ApiError):
    def __init__(self, run_id: str):
        super().__init__(ErrorCode.RUN_NOT_FOUND, f"Run '{run_id}' was not found.", status_code=404)
        self.run_id = run_id


class AttemptNotFound(ApiError):
    def __init__(self, run_id: str, attempt_id: str):
        super().__init__(
            ErrorCode.ATTEMPT_NOT_FOUND,
            f"Attempt '{attempt_id}' was not found in run '{run_id}'.",
            status_code=404,
        )
        self.run_id = run_id
        self.attempt_id = attempt_id


class InvalidStatusTransition(ApiError):
    def __init__(self, attempt_id: str, current: str, requested: str):
        super().__init__(
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"Attempt '{attempt_id}' cannot move from '{current}' to '{requested}'.",
            status_code=409,
        )
        self.current = current
        self.requested = requested


class EditCallFailed(ApiError):
    def __init__(self, message: str, code: ErrorCode = ErrorCode.EDIT_CALL_FAILED, status_code: int = 502):
        super().__init__(code, message, status_code=status_code)


class JudgeCallFailed(ApiError):
    def __init__(self, message: str, code: ErrorCode = ErrorCode.JUDGE_CALL_FAILED, status_code: int = 502):
        super().__init__(code, message, status_code=status_code)


class NoAttemptsProduced(ApiError):
    def __init__(self, run_id: str, failed_calls: int):
        super().__init__(
            ErrorCode.NO_ATTEMPTS_PRODUCED,
            f"All {failed_calls} image edit call(s) for run '{run_id}' failed.",
            status_code=502,
        )
        self.run_id = run_id
        self.failed_calls = failed_calls


class GenerationCancelled(ApiError):
    def __init__(self, run_id: str):
        super().__init__(
            ErrorCode.GENERATION_CANCELLED,
            f"Generation for run '{run_id}' was cancelled.",
            status_code=409,
        )
        self.run_id = run_id


def error_response(
    *,
    code: ErrorCode,
    message: str,
    request_id: str,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code.value,
                "message": message,
                "request_id": request_id,
            }
        },
    )


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    return "req_unknown"
