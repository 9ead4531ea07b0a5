from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chatrelay.media.adapter import (
    Failed,
    MediaJobError,
    Queued,
    Running,
    Submission,
    Succeeded,
)
from chatrelay.media.poller import Cancelled, JobOutcome, PollerState, ResumableJobPoller
from chatrelay.media.store import InMemoryDescriptorStore
from chatrelay.schemas.media import JobDescriptor

pytestmark = pytest.mark.anyio

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


async def fast_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


class FakeAdapter:
    """Replays statuses and records what the store held at each query."""

    def __init__(self, statuses=(), *, submission=None, store=None):
        self._statuses = list(statuses)
        self.submission = submission or Submission(request_id="req-1")
        self.store = store
        self.queries: list[str] = []
        self.persisted_attempts: list[int] = []
        self.submitted: list[dict] = []

    async def submit(self, body):
        self.submitted.append(body)
        if isinstance(self.submission, Exception):
            raise self.submission
        return self.submission

    async def status(self, request_id):
        self.queries.append(request_id)
        if self.store is not None:
            stored = await self.store.load("media")
            self.persisted_attempts.append(stored.attempts_made if stored else -1)
        if self._statuses:
            status = self._statuses.pop(0)
        else:
            status = Running()
        if isinstance(status, Exception):
            raise status
        return status


def make_poller(adapter, store=None, **kwargs):
    store = store or InMemoryDescriptorStore()
    if adapter.store is None:
        adapter.store = store
    poller = ResumableJobPoller(
        adapter,
        store,
        poll_interval=5.0,
        max_attempts=kwargs.pop("max_attempts", 60),
        stale_after=timedelta(minutes=5),
        sleep=fast_sleep,
        clock=lambda: NOW,
        **kwargs,
    )
    outcomes: list[JobOutcome] = []
    poller.add_listener(outcomes.append)
    return poller, store, outcomes


async def test_submit_persists_descriptor_then_polls_to_success() -> None:
    adapter = FakeAdapter([Queued(), Running(), Succeeded("https://cdn.example/v.mp4")])
    poller, store, outcomes = make_poller(adapter)

    descriptor = await poller.submit({"prompt": "cat"}, correlation_id="conv-1")

    assert isinstance(descriptor, JobDescriptor)
    assert descriptor.correlation_id == "conv-1"
    assert (await store.load("media")) is not None
    assert poller.state is PollerState.POLLING

    outcome = await poller.wait()

    assert outcome is not None
    assert outcome.state is PollerState.SUCCEEDED
    assert outcome.result_url == "https://cdn.example/v.mp4"
    assert outcome.attempts == 3
    assert outcomes == [outcome]
    assert adapter.persisted_attempts == [1, 2, 3]
    assert await store.load("media") is None
    assert poller.snapshot()["result_url"] == "https://cdn.example/v.mp4"


async def test_immediate_result_skips_polling() -> None:
    adapter = FakeAdapter(submission=Submission(result_url="https://cdn.example/now.mp4"))
    poller, store, outcomes = make_poller(adapter)

    result = await poller.submit({"prompt": "dog"})

    assert isinstance(result, JobOutcome)
    assert result.result_url == "https://cdn.example/now.mp4"
    assert adapter.queries == []
    assert await store.load("media") is None
    assert len(outcomes) == 1


async def test_failed_submission_leaves_no_descriptor() -> None:
    adapter = FakeAdapter(submission=MediaJobError(402, "balance"))
    poller, store, outcomes = make_poller(adapter)

    with pytest.raises(MediaJobError):
        await poller.submit({"prompt": "x"})

    assert poller.state is PollerState.IDLE
    assert await store.load("media") is None
    assert outcomes == []


async def test_provider_failure_is_terminal() -> None:
    adapter = FakeAdapter([Failed("content policy")])
    poller, store, outcomes = make_poller(adapter)

    await poller.submit({"prompt": "x"})
    outcome = await poller.wait()

    assert outcome.state is PollerState.FAILED
    assert "content policy" in outcome.message


async def test_status_errors_count_as_attempts_until_timeout() -> None:
    adapter = FakeAdapter([MediaJobError(500, "flaky"), Running(), Queued()])
    poller, _, outcomes = make_poller(adapter, max_attempts=3)

    await poller.submit({"prompt": "x"})
    outcome = await poller.wait()

    assert outcome.state is PollerState.TIMED_OUT
    assert outcome.attempts == 3
    assert len(adapter.queries) == 3
    assert "3 status checks" in outcome.message


async def test_resume_continues_attempt_count() -> None:
    store = InMemoryDescriptorStore()
    await store.save(
        JobDescriptor(
            request_id="req-7",
            correlation_id="conv-7",
            attempts_made=7,
            created_at=NOW - timedelta(seconds=30),
        )
    )
    adapter = FakeAdapter([Succeeded("https://cdn.example/r.mp4")])
    poller, _, outcomes = make_poller(adapter, store)

    assert await poller.resume() is True
    outcome = await poller.wait()

    assert adapter.queries == ["req-7"]
    assert adapter.persisted_attempts == [8]
    assert outcome.attempts == 8
    assert outcome.correlation_id == "conv-7"


async def test_stale_descriptor_is_discarded() -> None:
    store = InMemoryDescriptorStore()
    await store.save(
        JobDescriptor(
            request_id="old",
            correlation_id="conv",
            created_at=NOW - timedelta(minutes=10),
        )
    )
    adapter = FakeAdapter()
    poller, _, outcomes = make_poller(adapter, store)

    assert await poller.resume() is False
    assert await store.load("media") is None
    assert adapter.queries == []
    assert outcomes == []


async def test_new_submission_cancels_active_job() -> None:
    adapter = FakeAdapter()
    poller, store, outcomes = make_poller(adapter)

    await poller.submit({"prompt": "first"}, correlation_id="conv-a")
    await asyncio.sleep(0)
    adapter.submission = Submission(request_id="req-2")
    second = await poller.submit({"prompt": "second"}, correlation_id="conv-b")

    assert [o.correlation_id for o in outcomes] == ["conv-a"]
    assert isinstance(outcomes[0].status, Cancelled)
    assert poller.descriptor == second
    assert (await store.load("media")).request_id == "req-2"

    await poller.cancel()


async def test_cancel_clears_descriptor_and_notifies() -> None:
    adapter = FakeAdapter()
    poller, store, outcomes = make_poller(adapter)

    await poller.submit({"prompt": "x"}, correlation_id="conv-c")
    assert await poller.cancel() is True

    assert poller.state is PollerState.CANCELLED
    assert poller.active is False
    assert await store.load("media") is None
    assert outcomes[-1].state is PollerState.CANCELLED
    assert await poller.cancel() is False


async def test_hidden_poller_skips_status_queries() -> None:
    adapter = FakeAdapter([Succeeded("https://cdn.example/h.mp4")])
    poller, store, _ = make_poller(adapter)

    await poller.submit({"prompt": "x"})
    poller.set_visibility(True)
    for _ in range(20):
        await asyncio.sleep(0)

    assert adapter.queries == []
    assert (await store.load("media")).attempts_made == 0

    poller.set_visibility(False)
    outcome = await poller.wait()

    assert outcome.state is PollerState.SUCCEEDED
    assert outcome.attempts == 1


async def test_aclose_keeps_descriptor_for_restart() -> None:
    adapter = FakeAdapter()
    poller, store, outcomes = make_poller(adapter)

    await poller.submit({"prompt": "x"})
    await poller.aclose()

    assert poller.active is False
    assert (await store.load("media")).request_id == "req-1"
    assert outcomes == []


class FailingSaveStore(InMemoryDescriptorStore):
    """Accept the first save, then fail like a full or read-only disk."""

    def __init__(self) -> None:
        super().__init__()
        self.saves = 0

    async def save(self, descriptor: JobDescriptor) -> None:
        self.saves += 1
        if self.saves > 1:
            raise OSError(28, "No space left on device")
        await super().save(descriptor)


async def test_unexpected_loop_error_becomes_failed_outcome() -> None:
    store = FailingSaveStore()
    poller, _, outcomes = make_poller(FakeAdapter(), store)

    await poller.submit({"prompt": "cat"}, correlation_id="conv-disk")
    outcome = await poller.wait()

    assert outcome is not None
    assert outcome.state is PollerState.FAILED
    assert outcome.correlation_id == "conv-disk"
    assert "No space left" in outcome.message
    assert outcomes == [outcome]
    assert poller.state is PollerState.FAILED
    assert not poller.active
    assert await store.load("media") is None


async def test_unexpected_adapter_error_becomes_failed_outcome() -> None:
    poller, store, outcomes = make_poller(FakeAdapter([KeyError("status")]))

    await poller.submit({"prompt": "cat"}, correlation_id="conv-key")
    outcome = await poller.wait()

    assert outcome.state is PollerState.FAILED
    assert outcome.attempts == 1
    assert [o.correlation_id for o in outcomes] == ["conv-key"]
    assert await store.load("media") is None
