from __future__ import annotations

import logging
import re
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response

from backend.app.api.routes_generation_runs import router as generation_runs_router
from backend.app.core.config import Settings, get_settings
from backend.app.core.errors import ApiError, ErrorCode, error_response, request_id_from_request
from backend.app.core.logging import configure_logging
from backend.app.services.capabilities import ImageEditCapability, JudgeCapability
from backend.app.services.generation_orchestrator import GenerationOrchestrator
from backend.app.services.image_edit_service import ImageEditService
from backend.app.services.judge_service import JudgeService
from backend.app.storage.run_store import RunStore

configure_logging()
logger = logging.getLogger("gridedit.backend")

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


def _incoming_request_id(request: Request) -> str | None:
    value = request.headers.get("x-request-id", "").strip()
    return value if _REQUEST_ID_PATTERN.match(value) else None


def create_app(
    settings: Settings | None = None,
    *,
    image_edit: ImageEditCapability | None = None,
    judge: JudgeCapability | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    run_store = RunStore.from_settings(settings)
    orchestrator = GenerationOrchestrator(
        settings=settings,
        run_store=run_store,
        image_edit=image_edit or ImageEditService(settings),
        judge=judge or JudgeService(settings),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        run_store.start()
        try:
            yield
        finally:
            await run_store.stop()

    app = FastAPI(title="Grid Edit Backend", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-request-id"],
    )

    app.state.settings = settings
    app.state.run_store = run_store
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = _incoming_request_id(request) or f"req_{uuid.uuid4().hex[:8]}"
        request.state.request_id = request_id
        start = time.perf_counter()

        def log_context(**fields: object) -> dict[str, object]:
            context: dict[str, object] = {
                "request_id": request_id,
                "extra_fields": {"method": request.method, "path": request.url.path, **fields},
            }
            run_id = request.path_params.get("run_id")
            if run_id:
                context["run_id"] = run_id
            return context

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_failed",
                extra=log_context(duration_ms=int((time.perf_counter() - start) * 1000)),
            )
            raise

        response.headers["x-request-id"] = request_id
        logger.info(
            "request_completed",
            extra=log_context(
                status_code=response.status_code,
                duration_ms=int((time.perf_counter() - start) * 1000),
            ),
        )
        return response

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError) -> Response:
        return error_response(
            code=exc.code,
            message=exc.message,
            request_id=request_id_from_request(request),
            status_code=exc.status_code,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        details = "; ".join(err.get("msg", "invalid field") for err in exc.errors())
        message = f"Request validation failed: {details}" if details else "Invalid request payload."
        return error_response(
            code=ErrorCode.INVALID_REQUEST,
            message=message,
            request_id=request_id_from_request(request),
            status_code=422,
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> Response:
        logger.exception(
            "unexpected_error",
            extra={"request_id": request_id_from_request(request)},
        )
        return error_response(
            code=ErrorCode.INTERNAL_ERROR,
            message="Unexpected backend error.",
            request_id=request_id_from_request(request),
            status_code=500,
        )

    @app.get("/health")
    async def health() -> dict[str, str | int]:
        return {"status": "ok", "active_runs": len(run_store)}

    app.include_router(generation_runs_router)

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
