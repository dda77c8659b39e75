#!/usr/bin/env python3
"""Submit skybox and/or mesh jobs to a running gateway and follow their progress."""

from __future__ import annotations

import argparse
import os
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx

DEFAULT_INTERVAL_SECONDS = 10.0
DEFAULT_MAX_ATTEMPTS = 30
TERMINAL_STAGES = {"completed", "failed"}


@dataclass
class PollOutcome:
    stage: str
    overall: int
    message: str
    attempts: int
    tracks: dict = field(default_factory=dict)


def _headers(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"}


def submit(client: httpx.Client, api_key: str, path: str, body: dict) -> str:
    response = client.post(path, json=body, headers=_headers(api_key))
    payload = response.json()
    if response.status_code >= 400 or not payload.get("success"):
        raise RuntimeError(f"{path} failed: {payload.get('code')} {payload.get('message')}")
    return payload["data"]["id"]


def poll_progress(
    client: httpx.Client,
    api_key: str,
    *,
    skybox_id: Optional[str] = None,
    mesh_id: Optional[str] = None,
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
    report: Callable[[str], None] = print,
) -> PollOutcome:
    params = {name: value for name, value in (("skybox_id", skybox_id), ("mesh_id", mesh_id)) if value}
    outcome = PollOutcome(stage="queued", overall=0, message="", attempts=0)
    for attempt in range(1, max_attempts + 1):
        outcome.attempts = attempt
        try:
            response = client.get("/generation/progress", params=params, headers=_headers(api_key))
            payload = response.json()
        except (httpx.RequestError, ValueError) as exc:
            report(f"attempt {attempt}: gateway unreachable ({exc})")
        else:
            if response.status_code >= 400:
                if not payload.get("retryable"):
                    raise RuntimeError(f"progress failed: {payload.get('code')} {payload.get('message')}")
                report(f"attempt {attempt}: {payload.get('code')}, retrying")
            else:
                data = payload["data"]
                outcome.stage = data["stage"]
                outcome.overall = data["overall"]
                outcome.message = data["message"]
                outcome.tracks = data.get("tracks", {})
                report(f"{outcome.overall:3d}% {outcome.message}")
                if outcome.stage in TERMINAL_STAGES:
                    return outcome
        if attempt < max_attempts:
            sleep(interval_seconds)
    outcome.stage = "timeout"
    return outcome


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Generate and follow an In3D scene.")
    parser.add_argument("prompt")
    parser.add_argument("--gateway-url", default=os.getenv("GATEWAY_URL", "http://localhost:8080"))
    parser.add_argument("--api-key", default=os.getenv("IN3D_API_KEY"))
    parser.add_argument("--no-skybox", action="store_true")
    parser.add_argument("--mesh", action="store_true", help="Also generate a 3D mesh")
    parser.add_argument("--style-id", type=int, default=None)
    parser.add_argument("--interval", type=float, default=DEFAULT_INTERVAL_SECONDS)
    parser.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS)
    args = parser.parse_args(argv)

    if not args.api_key:
        print("FAIL: --api-key or IN3D_API_KEY required", file=sys.stderr)
        return 1
    if args.no_skybox and not args.mesh:
        print("FAIL: nothing to generate", file=sys.stderr)
        return 1

    with httpx.Client(base_url=args.gateway_url, timeout=30.0) as client:
        skybox_id = None
        mesh_id = None
        if not args.no_skybox:
            body = {"prompt": args.prompt}
            if args.style_id is not None:
                body["style_id"] = args.style_id
            skybox_id = submit(client, args.api_key, "/skybox/generate", body)
            print(f"skybox_id={skybox_id}")
        if args.mesh:
            mesh_id = submit(client, args.api_key, "/meshy/generate", {"prompt": args.prompt})
            print(f"mesh_id={mesh_id}")

        outcome = poll_progress(
            client,
            args.api_key,
            skybox_id=skybox_id,
            mesh_id=mesh_id,
            interval_seconds=args.interval,
            max_attempts=args.max_attempts,
        )

    for name, track in outcome.tracks.items():
        if track.get("result_url"):
            print(f"{name}_url={track['result_url']}")
    if outcome.stage == "completed":
        return 0
    if outcome.stage == "timeout":
        print(f"TIMEOUT after {outcome.attempts} attempts", file=sys.stderr)
        return 2
    print(f"FAIL: {outcome.message}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
