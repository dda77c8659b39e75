from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class GenerationKind(str, Enum):
    SKYBOX = "skybox"
    MESH = "mesh"


class JobState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]


_STATE_RANK = {
    JobState.QUEUED: 0,
    JobState.PROCESSING: 1,
    JobState.COMPLETED: 2,
    JobState.FAILED: 2,
}


class GenerationRequest(BaseModel):
    kind: GenerationKind
    prompt: str = ""
    style: Optional[str] = None
    negative_prompt: Optional[str] = None
    webhook_url: Optional[str] = None
    options: dict[str, Any] = Field(default_factory=dict)


class JobHandle(BaseModel):
    kind: GenerationKind
    job_id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: JobState = JobState.QUEUED


class JobStatus(BaseModel):
    kind: GenerationKind
    job_id: str
    state: JobState
    progress: Optional[int] = None
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    assets: dict[str, str] = Field(default_factory=dict)
    provider_status: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def effective_progress(self) -> int:
        if self.state == JobState.COMPLETED:
            return 100
        return self.progress or 0


def clamp_progress(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return int(min(100.0, max(0.0, round(number))))


def advance(previous: Optional[JobStatus], observed: JobStatus) -> JobStatus:
    """Apply one poll result to the last known status of the same job.

    Terminal statuses are final. Otherwise neither the state nor the progress
    estimate may move backwards.
    """
    if previous is None:
        return _settle(observed)
    if previous.is_terminal:
        return previous
    state = observed.state if observed.state.rank >= previous.state.rank else previous.state
    progress = observed.progress
    if previous.progress is not None:
        progress = max(previous.progress, progress or 0)
    return _settle(observed.model_copy(update={"state": state, "progress": progress}))


def _settle(status: JobStatus) -> JobStatus:
    if status.state == JobState.COMPLETED and status.progress != 100:
        return status.model_copy(update={"progress": 100})
    return status
