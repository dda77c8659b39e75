import unittest

from services.generation_gateway.app.errors import FailureKind, GatewayError
from services.generation_gateway.app.jobs import (
    GenerationKind,
    GenerationRequest,
    JobHandle,
    JobState,
    JobStatus,
    advance,
    clamp_progress,
)
from services.generation_gateway.app.submitter import GenerationSubmitter
from services.generation_gateway.app.tracker import JobStatusTracker


class FakeProvider:
    def __init__(self, kind, statuses=None, submit_error=None):
        self.kind = kind
        self.configured = True
        self.submitted = []
        self.polls = 0
        self._statuses = list(statuses or [])
        self._submit_error = submit_error

    def submit(self, request):
        self.submitted.append(request)
        if self._submit_error is not None:
            raise self._submit_error
        return f"{self.kind.value}-{len(self.submitted)}"

    def poll(self, job_id):
        self.polls += 1
        item = self._statuses.pop(0) if len(self._statuses) > 1 else self._statuses[0]
        if isinstance(item, Exception):
            raise item
        state, progress, url = item
        return JobStatus(
            kind=self.kind,
            job_id=job_id,
            state=state,
            progress=progress,
            result_url=url,
            error_message="boom" if state == JobState.FAILED else None,
        )


def transport_error():
    return GatewayError(FailureKind.TRANSPORT_ERROR, "unreachable")


class ProgressClampTests(unittest.TestCase):
    def test_clamp_progress(self):
        self.assertEqual(clamp_progress(-5), 0)
        self.assertEqual(clamp_progress(250), 100)
        self.assertEqual(clamp_progress("42.4"), 42)
        self.assertIsNone(clamp_progress(None))
        self.assertIsNone(clamp_progress(True))
        self.assertIsNone(clamp_progress("n/a"))
        self.assertIsNone(clamp_progress(float("nan")))


class AdvanceTests(unittest.TestCase):
    def _status(self, state, progress=None, url=None):
        return JobStatus(
            kind=GenerationKind.MESH, job_id="t", state=state, progress=progress, result_url=url
        )

    def test_terminal_status_is_final(self):
        done = self._status(JobState.COMPLETED, 100, "https://x/m.glb")
        self.assertEqual(advance(done, self._status(JobState.PROCESSING, 10)), done)

    def test_state_and_progress_never_regress(self):
        previous = self._status(JobState.PROCESSING, 60)
        merged = advance(previous, self._status(JobState.QUEUED, 20))
        self.assertEqual(merged.state, JobState.PROCESSING)
        self.assertEqual(merged.progress, 60)

    def test_completed_settles_at_one_hundred(self):
        merged = advance(None, self._status(JobState.COMPLETED, 80, "https://x/m.glb"))
        self.assertEqual(merged.progress, 100)


class SubmitterTests(unittest.TestCase):
    def setUp(self):
        self.skybox = FakeProvider(GenerationKind.SKYBOX)
        self.mesh = FakeProvider(GenerationKind.MESH)
        self.submitter = GenerationSubmitter(
            {GenerationKind.SKYBOX: self.skybox, GenerationKind.MESH: self.mesh},
            max_prompt_length=20,
        )

    def test_routes_by_kind_and_returns_queued_handle(self):
        handle = self.submitter.submit(GenerationRequest(kind=GenerationKind.MESH, prompt="a chair"))
        self.assertEqual(handle.kind, GenerationKind.MESH)
        self.assertEqual(handle.job_id, "mesh-1")
        self.assertEqual(handle.status, JobState.QUEUED)
        self.assertEqual(len(self.mesh.submitted), 1)
        self.assertEqual(self.skybox.submitted, [])

    def test_empty_prompt_never_reaches_provider(self):
        for prompt in ("", "   ", "\n\t"):
            with self.assertRaises(GatewayError) as ctx:
                self.submitter.submit(GenerationRequest(kind=GenerationKind.SKYBOX, prompt=prompt))
            self.assertEqual(ctx.exception.kind, FailureKind.INVALID_REQUEST)
        self.assertEqual(self.skybox.submitted, [])

    def test_overlong_prompt_rejected(self):
        with self.assertRaises(GatewayError) as ctx:
            self.submitter.submit(GenerationRequest(kind=GenerationKind.SKYBOX, prompt="x" * 21))
        self.assertEqual(ctx.exception.code, "INVALID_REQUEST")
        self.assertEqual(self.skybox.submitted, [])

    def test_prompt_at_bound_accepted(self):
        self.submitter.submit(GenerationRequest(kind=GenerationKind.SKYBOX, prompt="x" * 20))
        self.assertEqual(len(self.skybox.submitted), 1)

    def test_provider_failures_propagate_normalized(self):
        provider = FakeProvider(
            GenerationKind.SKYBOX,
            submit_error=GatewayError(FailureKind.PROVIDER_AUTH_ERROR, "bad key"),
        )
        submitter = GenerationSubmitter({GenerationKind.SKYBOX: provider})
        with self.assertRaises(GatewayError) as ctx:
            submitter.submit(GenerationRequest(kind=GenerationKind.SKYBOX, prompt="sky"))
        self.assertEqual(ctx.exception.code, "PROVIDER_AUTH_ERROR")

    def test_missing_provider(self):
        submitter = GenerationSubmitter({})
        with self.assertRaises(GatewayError) as ctx:
            submitter.submit(GenerationRequest(kind=GenerationKind.MESH, prompt="chair"))
        self.assertEqual(ctx.exception.kind, FailureKind.PROVIDER_UNCONFIGURED)


class TrackerTests(unittest.TestCase):
    def test_completed_poll_is_idempotent(self):
        provider = FakeProvider(
            GenerationKind.SKYBOX,
            [
                (JobState.PROCESSING, 30, None),
                (JobState.COMPLETED, 100, "https://cdn.test/sky.jpg"),
                (JobState.PROCESSING, 10, None),
            ],
        )
        tracker = JobStatusTracker({GenerationKind.SKYBOX: provider})
        handle = JobHandle(kind=GenerationKind.SKYBOX, job_id="42")

        self.assertEqual(tracker.poll(handle).progress, 30)
        first = tracker.poll(handle)
        second = tracker.poll(handle)

        self.assertEqual(first, second)
        self.assertEqual(second.result_url, "https://cdn.test/sky.jpg")
        self.assertEqual(second.progress, 100)
        self.assertEqual(provider.polls, 2)

    def test_failed_job_is_terminal(self):
        provider = FakeProvider(GenerationKind.MESH, [(JobState.FAILED, 40, None)])
        tracker = JobStatusTracker({GenerationKind.MESH: provider})
        handle = JobHandle(kind=GenerationKind.MESH, job_id="t")
        status = tracker.poll(handle)
        self.assertEqual(status.state, JobState.FAILED)
        self.assertEqual(status.error_message, "boom")
        tracker.poll(handle)
        self.assertEqual(provider.polls, 1)

    def test_transport_error_is_distinct_from_failed(self):
        provider = FakeProvider(
            GenerationKind.MESH,
            [(JobState.PROCESSING, 20, None), transport_error(), (JobState.PROCESSING, 50, None)],
        )
        tracker = JobStatusTracker({GenerationKind.MESH: provider})
        handle = JobHandle(kind=GenerationKind.MESH, job_id="t")

        tracker.poll(handle)
        with self.assertRaises(GatewayError) as ctx:
            tracker.poll(handle)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(tracker.last_known(GenerationKind.MESH, "t").state, JobState.PROCESSING)
        self.assertEqual(tracker.poll(handle).progress, 50)

    def test_progress_does_not_regress_between_polls(self):
        provider = FakeProvider(
            GenerationKind.MESH,
            [(JobState.PROCESSING, 70, None), (JobState.PROCESSING, 40, None)],
        )
        tracker = JobStatusTracker({GenerationKind.MESH: provider})
        handle = JobHandle(kind=GenerationKind.MESH, job_id="t")
        tracker.poll(handle)
        self.assertEqual(tracker.poll(handle).progress, 70)

    def test_cache_is_bounded(self):
        provider = FakeProvider(GenerationKind.MESH, [(JobState.COMPLETED, 100, "https://x/a.glb")])
        tracker = JobStatusTracker({GenerationKind.MESH: provider}, cache_size=2)
        for job_id in ("a", "b", "c"):
            tracker.poll(JobHandle(kind=GenerationKind.MESH, job_id=job_id))
        self.assertIsNone(tracker.last_known(GenerationKind.MESH, "a"))
        self.assertIsNotNone(tracker.last_known(GenerationKind.MESH, "c"))

    def test_registered_job_starts_queued_and_polls_provider(self):
        provider = FakeProvider(GenerationKind.SKYBOX, [(JobState.PROCESSING, 15, None)])
        tracker = JobStatusTracker({GenerationKind.SKYBOX: provider})
        handle = JobHandle(kind=GenerationKind.SKYBOX, job_id="9")
        tracker.register(handle)
        self.assertEqual(tracker.last_known(GenerationKind.SKYBOX, "9").state, JobState.QUEUED)
        self.assertEqual(tracker.poll(handle).state, JobState.PROCESSING)
        self.assertEqual(provider.polls, 1)


if __name__ == "__main__":
    unittest.main()
