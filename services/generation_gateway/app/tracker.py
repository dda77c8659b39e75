from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Mapping, Optional

from .errors import FailureKind, GatewayError
from .jobs import GenerationKind, JobHandle, JobStatus, advance
from .providers import GenerationProvider

logger = logging.getLogger("in3d_gateway.tracker")

DEFAULT_CACHE_SIZE = 10000


class JobStatusTracker:
    """Polls providers and remembers the last status seen for each job.

    Terminal statuses are served from memory so repeated polls of a finished
    job return the same result without touching the provider again.
    """

    def __init__(
        self,
        providers: Mapping[GenerationKind, GenerationProvider],
        *,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ) -> None:
        self._providers = providers
        self._cache_size = max(1, cache_size)
        self._statuses: OrderedDict[tuple[GenerationKind, str], JobStatus] = OrderedDict()
        self._lock = threading.Lock()

    def last_known(self, kind: GenerationKind, job_id: str) -> Optional[JobStatus]:
        with self._lock:
            status = self._statuses.get((kind, job_id))
            if status is not None:
                self._statuses.move_to_end((kind, job_id))
            return status

    def _store(self, observed: JobStatus) -> JobStatus:
        key = (observed.kind, observed.job_id)
        with self._lock:
            merged = advance(self._statuses.get(key), observed)
            self._statuses[key] = merged
            self._statuses.move_to_end(key)
            while len(self._statuses) > self._cache_size:
                self._statuses.popitem(last=False)
        return merged

    def register(self, handle: JobHandle) -> JobStatus:
        return self._store(JobStatus(kind=handle.kind, job_id=handle.job_id, state=handle.status))

    def poll(self, handle: JobHandle) -> JobStatus:
        cached = self.last_known(handle.kind, handle.job_id)
        if cached is not None and cached.is_terminal:
            return cached

        provider = self._providers.get(handle.kind)
        if provider is None:
            raise GatewayError(
                FailureKind.PROVIDER_UNCONFIGURED, f"No provider configured for {handle.kind.value}"
            )
        try:
            observed = provider.poll(handle.job_id)
        except GatewayError as exc:
            if exc.retryable:
                logger.warning(
                    "status poll failed",
                    extra={"fields": {"kind": handle.kind.value, "job_id": handle.job_id, "code": exc.code}},
                )
            raise

        status = self._store(observed)
        if status.is_terminal and (cached is None or not cached.is_terminal):
            logger.info(
                "job reached terminal state",
                extra={"fields": {"kind": status.kind.value, "job_id": status.job_id, "state": status.state.value}},
            )
        return status
