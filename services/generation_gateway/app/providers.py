"""Adapters for the external generation providers.

Each adapter speaks one provider's wire format and converges on the shared
vocabulary: a job id on submit, a ``JobStatus`` on poll, and ``GatewayError``
with a normalised ``FailureKind`` for everything that goes wrong.
"""

from __future__ import annotations

import logging
import os
import random
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from .errors import FailureKind, GatewayError
from .jobs import GenerationKind, GenerationRequest, JobState, JobStatus, clamp_progress

logger = logging.getLogger("in3d_gateway.providers")

DEFAULT_SKYBOX_STYLE_ID = 3
DEPTH_SCALE_RANGE = (3.0, 10.0)
DEFAULT_DEPTH_SCALE = 3.0
MESH_MODELS = {"latest", "meshy-6", "meshy-5"}
DEFAULT_MESH_POLYCOUNT = 30000


class CircuitBreaker:
    def __init__(self, name: str, cooldown_seconds: float) -> None:
        self._name = name
        self._cooldown_seconds = cooldown_seconds
        self._last_failure = 0.0

    def is_open(self) -> bool:
        return (time.time() - self._last_failure) < self._cooldown_seconds

    def record_success(self) -> None:
        self._last_failure = 0.0

    def record_failure(self) -> None:
        self._last_failure = time.time()

    @property
    def name(self) -> str:
        return self._name


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(name, float(os.getenv("CIRCUIT_BREAKER_COOLDOWN_SECONDS", "10")))


def _httpx_timeout() -> httpx.Timeout:
    connect = float(os.getenv("HTTP_CONNECT_TIMEOUT_SECONDS", "2.0"))
    read = float(os.getenv("HTTP_READ_TIMEOUT_SECONDS", "30.0"))
    return httpx.Timeout(connect=connect, read=read, write=read, pool=connect)


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def _request_with_retries(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    json_body: dict | None = None,
    params: dict | None = None,
    headers: dict | None = None,
    breaker: CircuitBreaker | None = None,
) -> httpx.Response:
    if breaker and breaker.is_open():
        raise httpx.RequestError(f"{breaker.name} circuit breaker open")
    max_attempts = int(os.getenv("HTTP_MAX_RETRIES", "2")) + 1
    base_delay = float(os.getenv("HTTP_RETRY_BASE_DELAY_SECONDS", "0.2"))
    jitter = float(os.getenv("HTTP_RETRY_JITTER_SECONDS", "0.2"))
    last_exc: Exception | None = None

    for attempt in range(max_attempts):
        try:
            response = client.request(method, url, json=json_body, params=params, headers=headers)
            if response.status_code >= 500:
                raise httpx.RequestError(f"upstream {response.status_code}")
            if breaker:
                breaker.record_success()
            return response
        except httpx.RequestError as exc:
            last_exc = exc
            if breaker:
                breaker.record_failure()
            if attempt >= max_attempts - 1:
                break
            delay = base_delay + random.uniform(0, jitter)
            _sleep(delay)
    raise httpx.RequestError("request failed") from last_exc


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class GenerationProvider(ABC):
    kind: GenerationKind
    name: str

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key or ""
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._breaker = _breaker(self.name)

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    @abstractmethod
    def submit(self, request: GenerationRequest) -> str:
        """Start a job and return the provider-assigned job id."""

    @abstractmethod
    def poll(self, job_id: str) -> JobStatus:
        """Fetch the current status of a job."""

    @abstractmethod
    def _auth_headers(self) -> dict[str, str]:
        ...

    @abstractmethod
    def _error_message(self, payload: Any) -> Optional[str]:
        ...

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=_httpx_timeout())
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _require_configured(self) -> None:
        if not self.configured:
            raise GatewayError(
                FailureKind.PROVIDER_UNCONFIGURED,
                f"{self.name} API is not configured. Please contact support.",
            )

    def _call(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | None = None,
        params: dict | None = None,
    ) -> httpx.Response:
        self._require_configured()
        headers = {"Content-Type": "application/json", **self._auth_headers()}
        try:
            return _request_with_retries(
                self._http(),
                method,
                f"{self._base_url}{path}",
                json_body=json_body,
                params=params,
                headers=headers,
                breaker=self._breaker,
            )
        except httpx.RequestError as exc:
            cause = exc.__cause__ or exc
            logger.warning("%s request failed: %s", self.name, cause)
            raise GatewayError(
                FailureKind.TRANSPORT_ERROR,
                f"{self.name} is unreachable; try again shortly",
            ) from exc

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        raise self.normalize_error(response.status_code, _json_or_none(response))

    def normalize_error(self, status_code: int, payload: Any) -> GatewayError:
        detail = self._error_message(payload)
        if status_code in (400, 422):
            kind = FailureKind.INVALID_REQUEST
            message = detail or "Invalid request parameters"
        elif status_code == 401:
            kind = FailureKind.PROVIDER_AUTH_ERROR
            message = f"{self.name} rejected the configured API key"
        elif status_code in (402, 403, 429):
            kind = FailureKind.QUOTA_EXCEEDED
            message = detail or "Generation quota exceeded"
        elif status_code == 404:
            kind = FailureKind.NOT_FOUND
            message = (
                "The generation does not exist. It may have expired or was never created."
            )
        else:
            kind = FailureKind.PROVIDER_ERROR
            message = detail or f"{self.name} API error ({status_code})"
        logger.info("%s returned %s: %s", self.name, status_code, kind.value)
        return GatewayError(kind, message, details={"provider_status": status_code})

    def _decode(self, response: httpx.Response, *, on_malformed: FailureKind) -> dict[str, Any]:
        payload = _json_or_none(response)
        if not isinstance(payload, dict):
            logger.warning("%s returned a malformed payload", self.name)
            raise GatewayError(on_malformed, f"{self.name} returned a malformed response")
        return payload


class SkyboxProvider(GenerationProvider):
    kind = GenerationKind.SKYBOX
    name = "BlockadeLabs"

    STATUS_MAP = {
        "pending": JobState.QUEUED,
        "dispatched": JobState.PROCESSING,
        "processing": JobState.PROCESSING,
        "complete": JobState.COMPLETED,
        "completed": JobState.COMPLETED,
        "abort": JobState.FAILED,
        "error": JobState.FAILED,
    }
    # The provider reports no numeric progress; these are stage estimates.
    STAGE_PROGRESS = {
        "pending": 0,
        "dispatched": 15,
        "processing": 50,
    }

    def _auth_headers(self) -> dict[str, str]:
        return {"x-api-key": self._api_key}

    def _error_message(self, payload: Any) -> Optional[str]:
        if not isinstance(payload, dict):
            return None
        error = payload.get("error") or payload.get("message")
        if not isinstance(error, str):
            return None
        if "used every generation" in error:
            return "API quota has been exhausted. Please contact support or try again later."
        if "generations are disabled" in error:
            return "Skybox generation is temporarily disabled. Please try again later."
        return error

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        style_id = DEFAULT_SKYBOX_STYLE_ID
        if request.style not in (None, ""):
            try:
                style_id = int(request.style)
            except (TypeError, ValueError) as exc:
                raise GatewayError(
                    FailureKind.INVALID_REQUEST, "style_id must be an integer"
                ) from exc

        payload: dict[str, Any] = {
            "prompt": request.prompt.strip(),
            "style_id": style_id,
            "negative_prompt": request.negative_prompt or "",
        }
        webhook_url = request.webhook_url or _service_webhook_url()
        if webhook_url:
            payload["webhook_url"] = webhook_url

        options = request.options
        if options.get("export_wireframe"):
            payload["export_glb"] = True
            if options.get("mesh_density"):
                payload["mesh_density"] = options["mesh_density"]
            depth_scale = options.get("depth_scale")
            if depth_scale is not None:
                payload["depth_scale"] = _clamp_depth_scale(depth_scale)
        return payload

    def submit(self, request: GenerationRequest) -> str:
        payload = self.build_payload(request)
        response = self._call("POST", "/skybox", json_body=payload)
        self._raise_for_status(response)
        body = self._decode(response, on_malformed=FailureKind.PROVIDER_ERROR)
        generation = body.get("request") if isinstance(body.get("request"), dict) else body
        job_id = generation.get("id")
        if job_id in (None, ""):
            raise GatewayError(
                FailureKind.PROVIDER_ERROR, "No generation ID returned from BlockadeLabs API"
            )
        return str(job_id)

    def poll(self, job_id: str) -> JobStatus:
        response = self._call("GET", f"/skybox/generations/{job_id}")
        self._raise_for_status(response)
        body = self._decode(response, on_malformed=FailureKind.TRANSPORT_ERROR)
        generation = body.get("request") if isinstance(body.get("request"), dict) else body
        return self.normalize_status(job_id, generation)

    def normalize_status(self, job_id: str, generation: dict[str, Any]) -> JobStatus:
        raw_status = str(generation.get("status") or "").lower()
        state = self.STATUS_MAP.get(raw_status)
        if state is None:
            raise GatewayError(
                FailureKind.TRANSPORT_ERROR,
                f"BlockadeLabs reported an unknown status: {raw_status or 'missing'}",
            )

        progress = clamp_progress(generation.get("progress"))
        if progress is None:
            progress = self.STAGE_PROGRESS.get(raw_status)

        assets = {
            name: str(generation[field])
            for name, field in (
                ("file", "file_url"),
                ("thumbnail", "thumbnail_url"),
                ("depth_map", "depth_map_url"),
            )
            if generation.get(field)
        }
        result_url = generation.get("file_url") or None
        error_message = None
        if state == JobState.FAILED:
            error_message = (
                generation.get("error_message") or generation.get("error") or "Generation failed"
            )
        if state == JobState.COMPLETED and not result_url:
            # Completed without an asset yet; keep polling until the URL lands.
            state = JobState.PROCESSING
            progress = 95
        return JobStatus(
            kind=self.kind,
            job_id=str(job_id),
            state=state,
            progress=100 if state == JobState.COMPLETED else progress,
            result_url=result_url if state == JobState.COMPLETED else None,
            error_message=error_message,
            assets=assets,
            provider_status=raw_status,
        )

    def list_styles(self, *, page: int, limit: int) -> list[dict[str, Any]]:
        response = self._call("GET", "/skybox/styles", params={"page": page, "limit": limit})
        self._raise_for_status(response)
        payload = _json_or_none(response)
        if isinstance(payload, dict):
            payload = payload.get("data")
        if not isinstance(payload, list):
            raise GatewayError(
                FailureKind.TRANSPORT_ERROR, "BlockadeLabs returned a malformed styles list"
            )
        return [style for style in payload if isinstance(style, dict)]


def _service_webhook_url() -> Optional[str]:
    url = os.getenv("SKYBOX_WEBHOOK_URL")
    if not url:
        return None
    secret = os.getenv("SKYBOX_WEBHOOK_SECRET")
    if not secret:
        return url
    # Only the service's own callback carries the token; caller-supplied URLs never do.
    return str(httpx.URL(url).copy_merge_params({"token": secret}))


def _clamp_depth_scale(value: Any) -> float:
    try:
        depth_scale = float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid depth_scale value %r, using default", value)
        return DEFAULT_DEPTH_SCALE
    low, high = DEPTH_SCALE_RANGE
    if low <= depth_scale <= high:
        return depth_scale
    logger.warning("depth_scale %s out of range, using default", depth_scale)
    return DEFAULT_DEPTH_SCALE


class MeshProvider(GenerationProvider):
    kind = GenerationKind.MESH
    name = "Meshy"

    STATUS_MAP = {
        "PENDING": JobState.QUEUED,
        "IN_PROGRESS": JobState.PROCESSING,
        "SUCCEEDED": JobState.COMPLETED,
        "FAILED": JobState.FAILED,
        "CANCELED": JobState.FAILED,
        "EXPIRED": JobState.FAILED,
    }

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    def _error_message(self, payload: Any) -> Optional[str]:
        if not isinstance(payload, dict):
            return None
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        message = payload.get("message")
        return message if isinstance(message, str) else None

    def build_payload(self, request: GenerationRequest) -> dict[str, Any]:
        options = request.options
        model = options.get("ai_model")
        if model not in MESH_MODELS:
            model = "latest"
        # art_style is only accepted by meshy-5; newer models reject it.
        legacy_model = model == "meshy-5"
        should_remesh = options.get("should_remesh")
        payload: dict[str, Any] = {
            "mode": "preview",
            "prompt": request.prompt.strip(),
            "ai_model": model,
            "topology": options.get("topology") or "triangle",
            "target_polycount": options.get("target_polycount") or DEFAULT_MESH_POLYCOUNT,
            "should_remesh": legacy_model if should_remesh is None else bool(should_remesh),
            "symmetry_mode": options.get("symmetry_mode") or "auto",
            "moderation": bool(options.get("moderation", False)),
        }
        if legacy_model:
            payload["art_style"] = request.style or "realistic"
        negative_prompt = (request.negative_prompt or "").strip()
        if negative_prompt:
            payload["negative_prompt"] = negative_prompt
        return payload

    def submit(self, request: GenerationRequest) -> str:
        payload = self.build_payload(request)
        response = self._call("POST", "/text-to-3d", json_body=payload)
        self._raise_for_status(response)
        body = self._decode(response, on_malformed=FailureKind.PROVIDER_ERROR)
        job_id = body.get("result") or body.get("id")
        if not job_id:
            raise GatewayError(FailureKind.PROVIDER_ERROR, "No task ID returned from Meshy API")
        return str(job_id)

    def poll(self, job_id: str) -> JobStatus:
        response = self._call("GET", f"/text-to-3d/{job_id}")
        self._raise_for_status(response)
        return self.normalize_status(
            job_id, self._decode(response, on_malformed=FailureKind.TRANSPORT_ERROR)
        )

    def normalize_status(self, job_id: str, task: dict[str, Any]) -> JobStatus:
        raw_status = str(task.get("status") or "").upper()
        state = self.STATUS_MAP.get(raw_status)
        if state is None:
            raise GatewayError(
                FailureKind.TRANSPORT_ERROR,
                f"Meshy reported an unknown status: {raw_status or 'missing'}",
            )
        model_urls = task.get("model_urls") if isinstance(task.get("model_urls"), dict) else {}
        assets = {fmt: str(url) for fmt, url in model_urls.items() if url}
        for name, field in (("thumbnail", "thumbnail_url"), ("video", "video_url")):
            if task.get(field):
                assets[name] = str(task[field])

        error_message = None
        if state == JobState.FAILED:
            task_error = task.get("task_error")
            if isinstance(task_error, dict) and task_error.get("message"):
                error_message = str(task_error["message"])
            elif raw_status == "CANCELED":
                error_message = "Generation was cancelled"
            else:
                error_message = "Generation failed"

        result_url = model_urls.get("glb") or next(iter(assets.values()), None)
        if state == JobState.COMPLETED and not result_url:
            raise GatewayError(
                FailureKind.TRANSPORT_ERROR, "Meshy reported success without model URLs"
            )
        return JobStatus(
            kind=self.kind,
            job_id=str(job_id),
            state=state,
            progress=100 if state == JobState.COMPLETED else clamp_progress(task.get("progress")),
            result_url=result_url if state == JobState.COMPLETED else None,
            error_message=error_message,
            assets=assets,
            provider_status=raw_status,
        )

    def cancel(self, job_id: str) -> dict[str, Any]:
        response = self._call("POST", f"/text-to-3d/{job_id}/cancel", json_body={})
        self._raise_for_status(response)
        payload = _json_or_none(response)
        return payload if isinstance(payload, dict) else {}


def skybox_provider_from_env(client: httpx.Client | None = None) -> SkyboxProvider:
    return SkyboxProvider(
        api_key=os.getenv("BLOCKADE_API_KEY"),
        base_url=os.getenv("BLOCKADE_API_URL", "https://backend.blockadelabs.com/api/v1"),
        client=client,
    )


def mesh_provider_from_env(client: httpx.Client | None = None) -> MeshProvider:
    return MeshProvider(
        api_key=os.getenv("MESHY_API_KEY"),
        base_url=os.getenv("MESHY_API_URL", "https://api.meshy.ai/openapi/v2"),
        client=client,
    )
