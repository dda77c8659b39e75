from __future__ import annotations

import logging
from typing import Mapping

from .errors import FailureKind, GatewayError
from .jobs import GenerationKind, GenerationRequest, JobHandle, JobState
from .providers import GenerationProvider

logger = logging.getLogger("in3d_gateway.submitter")

DEFAULT_MAX_PROMPT_LENGTH = 2000


class GenerationSubmitter:
    """Validates generation requests and hands them to the matching provider."""

    def __init__(
        self,
        providers: Mapping[GenerationKind, GenerationProvider],
        *,
        max_prompt_length: int = DEFAULT_MAX_PROMPT_LENGTH,
    ) -> None:
        self._providers = providers
        self._max_prompt_length = max_prompt_length

    @property
    def max_prompt_length(self) -> int:
        return self._max_prompt_length

    def validate(self, request: GenerationRequest) -> None:
        prompt = (request.prompt or "").strip()
        if not prompt:
            raise GatewayError(
                FailureKind.INVALID_REQUEST,
                "Prompt is required and must be a non-empty string",
                details={"field": "prompt"},
            )
        if len(prompt) > self._max_prompt_length:
            raise GatewayError(
                FailureKind.INVALID_REQUEST,
                f"Prompt must be at most {self._max_prompt_length} characters",
                details={"field": "prompt", "max_length": self._max_prompt_length},
            )

    def provider_for(self, kind: GenerationKind) -> GenerationProvider:
        provider = self._providers.get(kind)
        if provider is None:
            raise GatewayError(
                FailureKind.PROVIDER_UNCONFIGURED, f"No provider configured for {kind.value}"
            )
        return provider

    def submit(self, request: GenerationRequest) -> JobHandle:
        self.validate(request)
        provider = self.provider_for(request.kind)
        job_id = provider.submit(request)
        logger.info(
            "generation submitted",
            extra={"fields": {"kind": request.kind.value, "job_id": job_id, "prompt_length": len(request.prompt)}},
        )
        return JobHandle(kind=request.kind, job_id=job_id, status=JobState.QUEUED)
