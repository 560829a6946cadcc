from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Body, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .actor_state import ActorStateStore, create_actor_state_store
from .backend_gateway import BackendGateway
from .cleanup import CleanupGateway, CleanupOrchestrator
from .config import Settings, get_settings
from .errors import APIError, SessionAlreadyExistsError, SessionNotFoundError, error_payload
from .log import configure_logging
from .models import ApiResponse, HealthResponse, LabSessionCreate, LabSessionUpdate, TimerStatus
from .session_service import LabSessionService, record_to_payload
from .session_store import SessionStore, create_session_store
from .timer_actor import RetryPolicy, TimerActorRegistry

logger = logging.getLogger(__name__)

SERVICE_NAME = "lab-sessions-api"

ENDPOINTS = [
    {"method": "POST", "path": "/api/v1/labs/sessions", "description": "Create a new lab session"},
    {"method": "GET", "path": "/api/v1/labs/sessions/user/:user_id", "description": "Get active lab session for a user"},
    {
        "method": "GET",
        "path": "/api/v1/labs/sessions/user/:user_id/timer",
        "description": "Get the automatic cleanup timer for a user",
    },
    {"method": "PUT", "path": "/api/v1/labs/sessions/:user_id", "description": "Update an existing lab session"},
    {"method": "DELETE", "path": "/api/v1/labs/sessions/:user_id", "description": "Delete (terminate) a lab session"},
    {"method": "GET", "path": "/health", "description": "Health check endpoint"},
]

_MISSING_ERROR_TYPES = {"missing", "string_too_short"}


def _success(data: Any, message: str | None = None, status_code: int = 200) -> JSONResponse:
    body = ApiResponse(success=True, data=data, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude_none=True))


def _validation_message(errors: list[Any]) -> str:
    missing = [
        str(error["loc"][-1])
        for error in errors
        if error.get("type") in _MISSING_ERROR_TYPES and error.get("loc")
    ]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"
    first_error = errors[0]
    location = ".".join(str(part) for part in first_error.get("loc", []) if part != "body")
    detail = first_error.get("msg", "Invalid value")
    return f"{location}: {detail}" if location else detail


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        delay_seconds=settings.CLEANUP_RETRY_DELAY_SECONDS,
        backoff_factor=settings.CLEANUP_RETRY_BACKOFF_FACTOR,
        max_delay_seconds=settings.CLEANUP_RETRY_MAX_DELAY_SECONDS,
        max_attempts=settings.CLEANUP_MAX_ATTEMPTS,
    )


def create_app(
    settings: Settings | None = None,
    store: SessionStore | None = None,
    state_store: ActorStateStore | None = None,
    gateway: CleanupGateway | None = None,
    restore_timers: bool = True,
) -> FastAPI:
    runtime_settings = settings or get_settings()
    configure_logging(runtime_settings)

    runtime_store = store or create_session_store(runtime_settings.REDIS_URL)
    runtime_state_store = state_store or create_actor_state_store(runtime_settings.REDIS_URL)
    runtime_gateway = gateway or BackendGateway(
        api_url=runtime_settings.BACKEND_API_URL,
        api_token=runtime_settings.BACKEND_API_TOKEN,
        timeout_seconds=runtime_settings.BACKEND_TIMEOUT_SECONDS,
    )
    timers = TimerActorRegistry(
        state_store=runtime_state_store,
        session_store=runtime_store,
        orchestrator=CleanupOrchestrator(runtime_gateway),
        retry_policy=retry_policy_from_settings(runtime_settings),
    )
    service = LabSessionService(runtime_store, timers)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if restore_timers:
            await timers.restore()
        try:
            yield
        finally:
            await timers.shutdown()
            close_gateway = getattr(runtime_gateway, "close", None)
            if callable(close_gateway):
                await close_gateway()
            await runtime_state_store.close()
            await runtime_store.close()

    app = FastAPI(title="Lab Sessions API", version="1.0.0", lifespan=lifespan)
    app.state.settings = runtime_settings
    app.state.store = runtime_store
    app.state.state_store = runtime_state_store
    app.state.timers = timers
    app.state.session_service = service

    @app.exception_handler(APIError)
    async def api_error_handler(_: Any, exc: APIError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=error_payload(exc.code, exc.message))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Any, exc: RequestValidationError) -> JSONResponse:
        message = _validation_message(exc.errors()) if exc.errors() else "Invalid JSON in request body"
        return JSONResponse(status_code=400, content=error_payload("validation_error", message))

    @app.exception_handler(SessionNotFoundError)
    async def not_found_handler(_: Any, exc: SessionNotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content=error_payload("session_not_found", "No active lab session found for this user"),
        )

    @app.exception_handler(SessionAlreadyExistsError)
    async def conflict_handler(_: Any, exc: SessionAlreadyExistsError) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content=error_payload(
                "session_exists",
                "User already has an active lab session. Only one active lab per user is allowed.",
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_: Any, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled lab sessions error", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content=error_payload("internal_error", f"Internal server error: {exc}"),
        )

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="healthy", service=SERVICE_NAME, timestamp=datetime.now(timezone.utc))

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {"service": "Lab Sessions API", "version": app.version, "endpoints": ENDPOINTS}

    @app.post("/api/v1/labs/sessions")
    async def create_lab_session(payload: LabSessionCreate) -> JSONResponse:
        record, expires_at = await service.create_session(payload)
        data = record_to_payload(record)
        if expires_at is not None:
            data["expires_at"] = expires_at.isoformat()
        return _success(data, "Lab session created successfully", status_code=201)

    @app.get("/api/v1/labs/sessions/user/{user_id}")
    async def get_lab_session(user_id: str) -> JSONResponse:
        record = await service.get_session(user_id)
        return _success(record_to_payload(record), "Lab session retrieved successfully")

    @app.get("/api/v1/labs/sessions/user/{user_id}/timer", response_model=TimerStatus)
    async def get_lab_session_timer(user_id: str) -> TimerStatus:
        snapshot = await service.timer_status(user_id)
        return TimerStatus(
            user_id=snapshot.user_id,
            status=snapshot.status.value,
            lab_request_id=snapshot.primary_resource_id,
            worker_lab_request_ids=snapshot.secondary_resource_ids,
            alarm_at=snapshot.alarm_at,
            attempts=snapshot.attempts,
        )

    @app.put("/api/v1/labs/sessions/{user_id}")
    async def update_lab_session(user_id: str, body: dict[str, Any] | None = Body(default=None)) -> JSONResponse:
        if not body:
            raise APIError(status_code=400, code="empty_body", message="Request body cannot be empty")
        try:
            changes = LabSessionUpdate.model_validate(body).changes()
        except ValidationError as exc:
            raise APIError(status_code=400, code="validation_error", message=_validation_message(exc.errors())) from exc
        if not changes:
            raise APIError(status_code=400, code="no_valid_fields", message="No valid fields to update")
        record = await service.update_session(user_id, changes)
        return _success(record_to_payload(record), "Lab session updated successfully")

    @app.delete("/api/v1/labs/sessions/{user_id}")
    async def delete_lab_session(user_id: str) -> JSONResponse:
        await service.delete_session(user_id)
        return _success({"user_id": user_id}, "Lab session deleted successfully")

    return app


app = create_app()
