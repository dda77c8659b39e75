"""Combine the skybox and mesh tracks into one progress signal.

The percentage is a weighted mean of the active tracks (plain passthrough
when only one runs). Stage messages come from percentage bands that can be
overridden with a YAML file named by PROGRESS_CONFIG_FILE.
"""

from __future__ import annotations

import logging
import math
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .jobs import JobState, JobStatus

logger = logging.getLogger("in3d_gateway.progress")


class ProgressBand(BaseModel):
    below: int = Field(ge=1, le=100)
    message: str


class StageMessages(BaseModel):
    bands: list[ProgressBand]
    final: str

    @field_validator("bands")
    @classmethod
    def _ascending(cls, bands: list[ProgressBand]) -> list[ProgressBand]:
        limits = [band.below for band in bands]
        if limits != sorted(set(limits)):
            raise ValueError("band limits must be strictly increasing")
        return bands

    def message_for(self, percentage: int) -> str:
        for band in self.bands:
            if percentage < band.below:
                return band.message
        return self.final


class ProgressConfig(BaseModel):
    skybox_weight: float = Field(default=1.0, gt=0)
    mesh_weight: float = Field(default=1.0, gt=0)
    dual: StageMessages = StageMessages(
        bands=[
            ProgressBand(below=10, message="Initializing generation..."),
            ProgressBand(below=30, message="Creating your 3D environment..."),
            ProgressBand(below=60, message="Generating skybox and 3D mesh in parallel..."),
            ProgressBand(below=90, message="Finalizing your immersive experience..."),
        ],
        final="Almost ready!",
    )
    skybox: StageMessages = StageMessages(
        bands=[
            ProgressBand(below=10, message="Initializing skybox generation..."),
            ProgressBand(below=50, message="Creating your environment..."),
            ProgressBand(below=90, message="Rendering skybox..."),
        ],
        final="Finalizing...",
    )
    mesh: StageMessages = StageMessages(
        bands=[
            ProgressBand(below=10, message="Initializing mesh generation..."),
            ProgressBand(below=50, message="Creating 3D model..."),
            ProgressBand(below=90, message="Rendering mesh..."),
        ],
        final="Finalizing...",
    )
    idle_message: str = "Waiting for a generation to start"
    all_complete_message: str = "Your immersive 3D environment is ready!"
    skybox_complete_message: str = "Skybox ready!"
    mesh_complete_message: str = "3D mesh ready!"
    skybox_done_mesh_pending: str = "Skybox complete! Finalizing 3D mesh..."
    mesh_done_skybox_pending: str = "3D mesh complete! Finalizing skybox..."
    failure_message: str = "{track} generation failed: {reason}"

    @model_validator(mode="after")
    def _check_failure_template(self) -> "ProgressConfig":
        try:
            self.failure_message.format(track="x", reason="y")
        except (KeyError, IndexError, AttributeError, ValueError) as exc:
            raise ValueError(f"failure_message uses an unknown placeholder: {exc}") from exc
        return self


def load_progress_config(path: str | None = None) -> ProgressConfig:
    path = path if path is not None else os.getenv("PROGRESS_CONFIG_FILE", "")
    if not path:
        return ProgressConfig()
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise RuntimeError(f"unable to read progress config {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise RuntimeError(f"progress config {path} must be a mapping")
    try:
        config = ProgressConfig.model_validate(raw)
    except ValidationError as exc:
        raise RuntimeError(f"invalid progress config {path}: {exc}") from exc
    logger.info("Loaded progress bands from %s", path)
    return config


class TrackProgress(BaseModel):
    job_id: str
    state: JobState
    progress: int
    stale: bool = False
    error_message: Optional[str] = None
    result_url: Optional[str] = None


class AggregatedProgress(BaseModel):
    percentage: int
    message: str
    stage: str
    skybox: Optional[TrackProgress] = None
    mesh: Optional[TrackProgress] = None


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _track(status: Optional[JobStatus], stale: bool) -> Optional[TrackProgress]:
    if status is None:
        return None
    return TrackProgress(
        job_id=status.job_id,
        state=status.state,
        progress=status.effective_progress(),
        stale=stale,
        error_message=status.error_message,
        result_url=status.result_url,
    )


def aggregate(
    skybox: Optional[JobStatus],
    mesh: Optional[JobStatus],
    config: ProgressConfig | None = None,
    *,
    stale_tracks: frozenset[str] = frozenset(),
) -> AggregatedProgress:
    config = config or ProgressConfig()
    skybox_track = _track(skybox, "skybox" in stale_tracks)
    mesh_track = _track(mesh, "mesh" in stale_tracks)

    if skybox_track and mesh_track:
        total_weight = config.skybox_weight + config.mesh_weight
        weighted = (
            skybox_track.progress * config.skybox_weight + mesh_track.progress * config.mesh_weight
        )
        percentage = _round_half_up(weighted / total_weight)
    elif skybox_track or mesh_track:
        percentage = (skybox_track or mesh_track).progress
    else:
        return AggregatedProgress(percentage=0, message=config.idle_message, stage="idle")

    stage, message = _describe(config, skybox_track, mesh_track, percentage)
    return AggregatedProgress(
        percentage=percentage,
        message=message,
        stage=stage,
        skybox=skybox_track,
        mesh=mesh_track,
    )


def _describe(
    config: ProgressConfig,
    skybox: Optional[TrackProgress],
    mesh: Optional[TrackProgress],
    percentage: int,
) -> tuple[str, str]:
    for label, track in (("Skybox", skybox), ("3D mesh", mesh)):
        if track is not None and track.state == JobState.FAILED:
            reason = track.error_message or "unknown error"
            return "failed", config.failure_message.format(track=label, reason=reason)

    skybox_done = skybox is not None and skybox.state == JobState.COMPLETED
    mesh_done = mesh is not None and mesh.state == JobState.COMPLETED

    if skybox and mesh:
        if skybox_done and mesh_done:
            return "completed", config.all_complete_message
        if skybox_done:
            return "processing", config.skybox_done_mesh_pending
        if mesh_done:
            return "processing", config.mesh_done_skybox_pending
        return _active_stage(skybox, mesh), config.dual.message_for(percentage)
    if skybox:
        if skybox_done:
            return "completed", config.skybox_complete_message
        return _active_stage(skybox), config.skybox.message_for(percentage)
    if mesh_done:
        return "completed", config.mesh_complete_message
    return _active_stage(mesh), config.mesh.message_for(percentage)


def _active_stage(*tracks: TrackProgress) -> str:
    if all(track.state == JobState.QUEUED for track in tracks):
        return "queued"
    return "processing"
