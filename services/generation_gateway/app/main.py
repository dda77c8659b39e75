from __future__ import annotations

import contextvars
import hmac
import json
import logging
import os
import threading
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .errors import FailureKind, GatewayError
from .jobs import GenerationKind, GenerationRequest, JobHandle, JobState, JobStatus
from .keys import KeyValidator, Principal, extract_credential, key_store_from_env
from .policy import FULL_ACCESS, READ_ACCESS, AccessPolicy, authorize, policy_from_env
from .progress import aggregate, load_progress_config
from .providers import mesh_provider_from_env, skybox_provider_from_env
from .submitter import GenerationSubmitter
from .tracker import JobStatusTracker

request_id_ctx = contextvars.ContextVar("request_id", default="-")

RETRY_AFTER_SECONDS = 5
STYLES_CACHE_LIMIT = 50
WEBHOOK_TOKEN_HEADER = "x-webhook-token"


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": request_id_ctx.get(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())


configure_logging()

logger = logging.getLogger("in3d_gateway")


def _gateway_env() -> str:
    return os.getenv("GATEWAY_ENV", "dev").lower()


def _enforce_startup_config() -> None:
    env = _gateway_env()
    if env not in {"dev", "development"}:
        required = ["API_KEY_PEPPER"]
        if os.getenv("SKYBOX_WEBHOOK_URL"):
            required.append("SKYBOX_WEBHOOK_SECRET")
        missing = [name for name in required if not os.getenv(name)]
        if missing:
            raise RuntimeError(f"Missing required secrets: {', '.join(missing)}")


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc


_enforce_startup_config()

app = FastAPI(title="In3D Generation Gateway")

key_store = key_store_from_env()
validator = KeyValidator(key_store)
providers = {
    GenerationKind.SKYBOX: skybox_provider_from_env(),
    GenerationKind.MESH: mesh_provider_from_env(),
}
submitter = GenerationSubmitter(
    providers, max_prompt_length=_int_env("MAX_PROMPT_LENGTH", 2000)
)
tracker = JobStatusTracker(providers, cache_size=_int_env("JOB_CACHE_SIZE", 10000))
progress_config = load_progress_config()

SKYBOX_POLICY = FULL_ACCESS
MESH_POLICY = policy_from_env(FULL_ACCESS, "MESH_REQUIRED_TIERS")
CREDIT_COSTS = {
    GenerationKind.SKYBOX: _int_env("SKYBOX_CREDIT_COST", 1),
    GenerationKind.MESH: _int_env("MESH_CREDIT_COST", 1),
}


class StylesCache:
    def __init__(self, limit: int = STYLES_CACHE_LIMIT) -> None:
        self._limit = limit
        self._styles: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def remember(self, styles: list[dict[str, Any]]) -> None:
        if not styles:
            return
        with self._lock:
            self._styles = list(styles[: self._limit])

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._styles)


styles_cache = StylesCache()


# -------------------------------------------------------------------
# Envelope
# -------------------------------------------------------------------


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_envelope(data: Any, *, status_code: int = 200, **extra: Any) -> JSONResponse:
    body = {
        "success": True,
        "data": data,
        **extra,
        "requestId": request_id_ctx.get(),
        "timestamp": _timestamp(),
    }
    return JSONResponse(status_code=status_code, content=body)


def error_response(exc: GatewayError) -> JSONResponse:
    body: dict[str, Any] = {
        "success": False,
        "error": exc.kind.value,
        "code": exc.code,
        "message": exc.message,
        "requestId": request_id_ctx.get(),
        "timestamp": _timestamp(),
    }
    if exc.details:
        body["details"] = exc.details
    headers = {}
    if exc.retryable:
        body["retryable"] = True
        headers["Retry-After"] = str(RETRY_AFTER_SECONDS)
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.exception_handler(GatewayError)
async def handle_gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        {"field": ".".join(str(part) for part in err.get("loc", ())[1:]), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return error_response(
        GatewayError(FailureKind.INVALID_REQUEST, "Invalid request parameters", details=problems)
    )


# -------------------------------------------------------------------
# Middleware
# -------------------------------------------------------------------


@app.middleware("http")
async def dump_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.error("UNHANDLED EXCEPTION:\n%s", traceback.format_exc())
        raise


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or str(uuid.uuid4())
    )
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["x-request-id"] = request_id
    return response


# -------------------------------------------------------------------
# Access control
# -------------------------------------------------------------------


def require_access(request: Request, policy: AccessPolicy) -> Principal:
    credential = extract_credential(request.headers, key_header=os.getenv("API_KEY_HEADER"))
    principal = validator.validate(credential)
    authorize(principal, policy).raise_for_rejection()
    request.state.principal = principal
    return principal


def _charge(principal: Principal, handle: JobHandle) -> Optional[int]:
    cost = CREDIT_COSTS[handle.kind]
    if cost <= 0:
        return principal.credits_remaining
    try:
        return key_store.decrement_credits(principal.user_id, cost)
    except GatewayError as exc:
        # The job is already accepted upstream; a missed charge is reconciled later.
        logger.warning(
            "credit charge failed",
            extra={"fields": {"job_id": handle.job_id, "user_id": principal.user_id, "code": exc.code}},
        )
        return None


# -------------------------------------------------------------------
# Request bodies
# -------------------------------------------------------------------


class SkyboxGenerateBody(BaseModel):
    prompt: str = ""
    in3d_prompt: Optional[str] = None
    style_id: Optional[Union[int, str]] = None
    negative_prompt: Optional[str] = None
    webhook_url: Optional[str] = None
    export_wireframe: bool = False
    mesh_density: Optional[Literal["low", "medium", "high", "epic"]] = None
    depth_scale: Optional[float] = None

    def to_request(self) -> GenerationRequest:
        return GenerationRequest(
            kind=GenerationKind.SKYBOX,
            prompt=self.prompt or self.in3d_prompt or "",
            style=None if self.style_id is None else str(self.style_id),
            negative_prompt=self.negative_prompt,
            webhook_url=self.webhook_url,
            options={
                "export_wireframe": self.export_wireframe,
                "mesh_density": self.mesh_density,
                "depth_scale": self.depth_scale,
            },
        )


class MeshGenerateBody(BaseModel):
    prompt: str = ""
    negative_prompt: Optional[str] = None
    art_style: Optional[str] = None
    ai_model: Optional[str] = None
    topology: Optional[Literal["quad", "triangle"]] = None
    target_polycount: Optional[int] = Field(default=None, ge=100, le=300000)
    should_remesh: Optional[bool] = None
    symmetry_mode: Optional[Literal["off", "auto", "on"]] = None
    moderation: bool = False

    def to_request(self) -> GenerationRequest:
        return GenerationRequest(
            kind=GenerationKind.MESH,
            prompt=self.prompt,
            style=self.art_style,
            negative_prompt=self.negative_prompt,
            options=self.model_dump(
                include={
                    "ai_model",
                    "topology",
                    "target_polycount",
                    "should_remesh",
                    "symmetry_mode",
                    "moderation",
                }
            ),
        )


# -------------------------------------------------------------------
# Response helpers
# -------------------------------------------------------------------


def _handle_payload(handle: JobHandle, credits_remaining: Optional[int]) -> dict[str, Any]:
    return {
        "id": handle.job_id,
        "kind": handle.kind.value,
        "status": handle.status.value,
        "created_at": handle.created_at.isoformat(),
        "credits_remaining": credits_remaining,
    }


def _status_payload(status: JobStatus) -> dict[str, Any]:
    return {
        "id": status.job_id,
        "kind": status.kind.value,
        "status": status.state.value,
        "progress": status.effective_progress(),
        "result_url": status.result_url,
        "error_message": status.error_message,
        "assets": status.assets,
        "provider_status": status.provider_status,
    }


def _submit(body_request: GenerationRequest, principal: Principal) -> JSONResponse:
    handle = submitter.submit(body_request)
    tracker.register(handle)
    remaining = _charge(principal, handle)
    logger.info(
        "generation accepted",
        extra={"fields": {"kind": handle.kind.value, "job_id": handle.job_id, "key": principal.key_prefix}},
    )
    return success_envelope(_handle_payload(handle, remaining), status_code=202)


def _status(kind: GenerationKind, job_id: str) -> JSONResponse:
    status = tracker.poll(JobHandle(kind=kind, job_id=job_id))
    return success_envelope(_status_payload(status))


# -------------------------------------------------------------------
# Health
# -------------------------------------------------------------------


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "in3d_generation_gateway"}


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok", "service": "in3d_generation_gateway"}


@app.get("/readyz")
def readyz() -> dict:
    key_store.ping()
    configured = {kind.value: provider.configured for kind, provider in providers.items()}
    if not any(configured.values()):
        raise GatewayError(
            FailureKind.PROVIDER_UNCONFIGURED,
            "No generation provider is configured",
            details={"providers": configured},
        )
    return {
        "status": "ready",
        "service": "in3d_generation_gateway",
        "providers": configured,
    }


# -------------------------------------------------------------------
# Skybox
# -------------------------------------------------------------------


@app.get("/skybox/styles")
def skybox_styles(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=100),
) -> JSONResponse:
    require_access(request, READ_ACCESS)
    try:
        styles = providers[GenerationKind.SKYBOX].list_styles(page=page, limit=limit)
        if page == 1:
            styles_cache.remember(styles)
        source = "provider"
    except GatewayError as exc:
        if not (exc.retryable or exc.kind == FailureKind.PROVIDER_UNCONFIGURED):
            raise
        cached = styles_cache.snapshot()
        start = (page - 1) * limit
        styles = cached[start : start + limit]
        if not styles:
            raise GatewayError(
                FailureKind.STYLES_UNAVAILABLE,
                "Skybox styles are temporarily unavailable",
            ) from exc
        logger.warning("serving cached skybox styles: %s", exc.code)
        source = "cache"
    # The provider does not report a total, only the page it returned.
    return success_envelope(
        styles,
        pagination={
            "page": page,
            "limit": limit,
            "count": len(styles),
            "hasMore": len(styles) == limit,
        },
        source=source,
    )


@app.post("/skybox/generate", status_code=202)
def generate_skybox(payload: SkyboxGenerateBody, request: Request) -> JSONResponse:
    principal = require_access(request, SKYBOX_POLICY)
    return _submit(payload.to_request(), principal)


@app.get("/skybox/status/{job_id}")
def skybox_status(job_id: str, request: Request) -> JSONResponse:
    require_access(request, READ_ACCESS)
    return _status(GenerationKind.SKYBOX, job_id)


def _verify_webhook_token(provided: Optional[str]) -> None:
    expected = os.getenv("SKYBOX_WEBHOOK_SECRET", "")
    if not expected:
        logger.warning("skybox webhook rejected: SKYBOX_WEBHOOK_SECRET not configured")
        raise GatewayError(FailureKind.INVALID_CREDENTIAL, "Webhook authentication failed")
    if not provided:
        raise GatewayError(FailureKind.MISSING_CREDENTIAL, "Webhook token required")
    if not hmac.compare_digest(provided, expected):
        logger.warning("skybox webhook rejected: token mismatch")
        raise GatewayError(FailureKind.INVALID_CREDENTIAL, "Webhook authentication failed")


@app.post("/skybox/webhook")
def skybox_webhook(payload: dict[str, Any], request: Request) -> JSONResponse:
    _verify_webhook_token(
        request.query_params.get("token") or request.headers.get(WEBHOOK_TOKEN_HEADER)
    )
    if isinstance(payload.get("request"), dict):
        payload = payload["request"]
    if payload.get("id") in (None, ""):
        raise GatewayError(FailureKind.INVALID_REQUEST, "Webhook body must carry a generation id")

    job_id = str(payload["id"])
    if tracker.last_known(GenerationKind.SKYBOX, job_id) is None:
        logger.info("webhook for untracked skybox generation %s", job_id)
        return success_envelope({"id": job_id, "tracked": False})
    # The notification only triggers a refresh; the provider's own status is stored.
    status = tracker.poll(JobHandle(kind=GenerationKind.SKYBOX, job_id=job_id))
    return success_envelope({"id": job_id, "tracked": True, "status": status.state.value})


# -------------------------------------------------------------------
# Mesh
# -------------------------------------------------------------------


@app.post("/meshy/generate", status_code=202)
def generate_mesh(payload: MeshGenerateBody, request: Request) -> JSONResponse:
    principal = require_access(request, MESH_POLICY)
    return _submit(payload.to_request(), principal)


@app.get("/meshy/status/{job_id}")
def mesh_status(job_id: str, request: Request) -> JSONResponse:
    require_access(request, READ_ACCESS)
    return _status(GenerationKind.MESH, job_id)


@app.post("/meshy/cancel/{job_id}")
def cancel_mesh(job_id: str, request: Request) -> JSONResponse:
    require_access(request, FULL_ACCESS)
    providers[GenerationKind.MESH].cancel(job_id)
    logger.info("mesh generation %s cancel requested", job_id)
    return success_envelope({"id": job_id, "cancelled": True})


# -------------------------------------------------------------------
# Combined progress
# -------------------------------------------------------------------


@app.get("/generation/progress")
def generation_progress(
    request: Request,
    skybox_id: Optional[str] = None,
    mesh_id: Optional[str] = None,
) -> JSONResponse:
    require_access(request, READ_ACCESS)
    if not skybox_id and not mesh_id:
        raise GatewayError(
            FailureKind.INVALID_REQUEST, "Provide skybox_id, mesh_id or both"
        )

    statuses: dict[GenerationKind, JobStatus] = {}
    stale: set[str] = set()
    for kind, job_id in ((GenerationKind.SKYBOX, skybox_id), (GenerationKind.MESH, mesh_id)):
        if not job_id:
            continue
        try:
            statuses[kind] = tracker.poll(JobHandle(kind=kind, job_id=job_id))
        except GatewayError as exc:
            if not exc.retryable:
                raise
            stale.add(kind.value)
            statuses[kind] = tracker.last_known(kind, job_id) or JobStatus(
                kind=kind, job_id=job_id, state=JobState.QUEUED, progress=0
            )

    result = aggregate(
        statuses.get(GenerationKind.SKYBOX),
        statuses.get(GenerationKind.MESH),
        progress_config,
        stale_tracks=frozenset(stale),
    )
    tracks = {
        name: track.model_dump(mode="json")
        for name, track in (("skybox", result.skybox), ("mesh", result.mesh))
        if track is not None
    }
    return success_envelope(
        {
            "overall": result.percentage,
            "message": result.message,
            "stage": result.stage,
            "tracks": tracks,
            "retryable": bool(stale),
        }
    )
