"""Tests for the job runner."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from podcaster.core.errors import ExternalServiceError, RetryExhaustedError, ValidationError
from podcaster.core.retry import RetryExecutor
from podcaster.feed.invalidation import JobTerminalEvent
from podcaster.models.episode import Episode
from podcaster.models.job import JobStatus, ProcessingJob
from podcaster.models.submission import (
    ContentSubmission,
    SubmissionStateMachine,
    SubmissionStatus,
)
from podcaster.services.job_runner import STALE_JOB_MESSAGE, JobContext, JobRunner
from podcaster.services.stores import InMemoryJobStore, InMemorySubmissionStore
from tests.fixtures.clock import RecordingSleep
from tests.fixtures.stores import make_episode


class ScriptedProcessor:
    """Fails with the queued errors, then produces an episode."""

    def __init__(self, errors: list[Exception] | None = None, feed_slug: str = "default"):
        self.errors = list(errors or [])
        self.feed_slug = feed_slug
        self.calls = 0
        self.seen_statuses: list[SubmissionStatus] = []

    async def __call__(
        self, submission: ContentSubmission, context: JobContext
    ) -> Episode:
        self.calls += 1
        self.seen_statuses.append(submission.status)
        await context.report_progress(25, "extracting")
        if self.errors:
            raise self.errors.pop(0)
        await context.report_progress(80, "synthesizing")
        return make_episode(self.calls, feed_slug=self.feed_slug, submission_id=submission.id)


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[JobTerminalEvent] = []

    async def __call__(self, event: JobTerminalEvent) -> None:
        self.events.append(event)


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def published() -> list[Episode]:
    return []


def _runner(
    job_store: InMemoryJobStore,
    submission_store: InMemorySubmissionStore,
    processor,
    retry_executor: RetryExecutor,
    events: EventRecorder,
    published: list[Episode],
) -> JobRunner:
    async def publish(episode: Episode) -> None:
        published.append(episode)

    return JobRunner(
        job_store,
        submission_store,
        processor,
        retry_executor=retry_executor,
        event_sink=events,
        publish_episode=publish,
    )


async def _queue(
    submission_store: InMemorySubmissionStore,
    job_store: InMemoryJobStore,
    max_retries: int = 2,
) -> tuple[ContentSubmission, ProcessingJob]:
    submission = SubmissionStateMachine.create("https://example.com/article", "url")
    await submission_store.save(submission)
    job = ProcessingJob.create_for_submission(submission.id, max_retries=max_retries)
    await job_store.save(job)
    return submission, job


class TestRun:
    @pytest.mark.asyncio
    async def test_success_completes_job_and_submission(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        processor = ScriptedProcessor()
        runner = _runner(job_store, submission_store, processor, retry_executor, events, published)
        submission, job = await _queue(submission_store, job_store)

        result = await runner.run(job)

        assert result.status == JobStatus.COMPLETED
        assert result.progress == 100
        assert result.retry_count == 0
        assert await job_store.get(job.id) == result
        stored = await submission_store.get(submission.id)
        assert stored is not None and stored.status == SubmissionStatus.COMPLETED
        assert processor.seen_statuses == [SubmissionStatus.PROCESSING]
        assert [ep.submission_id for ep in published] == [submission.id]
        assert len(events.events) == 1
        assert events.events[0].status == JobStatus.COMPLETED
        assert events.events[0].submission_id == submission.id

    @pytest.mark.asyncio
    async def test_event_names_episode_feed(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        processor = ScriptedProcessor(feed_slug="science")
        runner = _runner(job_store, submission_store, processor, retry_executor, events, published)
        _, job = await _queue(submission_store, job_store)

        await runner.run(job)

        assert events.events[0].feed_slug == "science"

    @pytest.mark.asyncio
    async def test_retryable_failures_then_success(
        self,
        job_store,
        submission_store,
        retry_executor,
        fake_sleep: RecordingSleep,
        events,
        published,
    ) -> None:
        processor = ScriptedProcessor(
            errors=[ExternalServiceError("tts", "timeout"), ConnectionError("reset")]
        )
        runner = _runner(job_store, submission_store, processor, retry_executor, events, published)
        submission, job = await _queue(submission_store, job_store, max_retries=2)

        result = await runner.run(job)

        assert result.status == JobStatus.COMPLETED
        assert result.retry_count == 2
        assert processor.calls == 3
        assert fake_sleep.calls == [2.0, 4.0]
        assert [e.status for e in events.events] == [
            JobStatus.FAILED,
            JobStatus.FAILED,
            JobStatus.COMPLETED,
        ]
        assert events.events[0].error_message == "tts: timeout"
        stored = await submission_store.get(submission.id)
        assert stored is not None and stored.status == SubmissionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_exhaustion_fails_submission(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        processor = ScriptedProcessor(
            errors=[ExternalServiceError("tts", "unavailable") for _ in range(5)]
        )
        runner = _runner(job_store, submission_store, processor, retry_executor, events, published)
        submission, job = await _queue(submission_store, job_store, max_retries=2)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await runner.run(job)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, ExternalServiceError)
        assert processor.calls == 3
        stored_job = await job_store.get(job.id)
        assert stored_job is not None
        assert stored_job.status == JobStatus.FAILED
        assert stored_job.retry_count == 2
        assert not stored_job.can_retry()
        stored = await submission_store.get(submission.id)
        assert stored is not None and stored.status == SubmissionStatus.FAILED
        assert stored.error_message == "tts: unavailable"
        assert len(events.events) == 3
        assert published == []

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        error = ValueError("unsupported document")
        processor = ScriptedProcessor(errors=[error])
        runner = _runner(job_store, submission_store, processor, retry_executor, events, published)
        submission, job = await _queue(submission_store, job_store)

        with pytest.raises(ValueError) as exc_info:
            await runner.run(job)

        assert exc_info.value is error
        assert processor.calls == 1
        stored_job = await job_store.get(job.id)
        assert stored_job is not None
        assert stored_job.status == JobStatus.FAILED
        assert stored_job.error_message == "unsupported document"
        assert stored_job.retry_count == 0
        stored = await submission_store.get(submission.id)
        assert stored is not None and stored.status == SubmissionStatus.FAILED
        assert stored.error_message == "unsupported document"

    @pytest.mark.asyncio
    async def test_job_without_retries_runs_once(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        processor = ScriptedProcessor(errors=[ExternalServiceError("tts", "timeout")])
        runner = _runner(job_store, submission_store, processor, retry_executor, events, published)
        _, job = await _queue(submission_store, job_store, max_retries=0)

        with pytest.raises(RetryExhaustedError):
            await runner.run(job)

        assert processor.calls == 1

    @pytest.mark.asyncio
    async def test_progress_is_persisted_while_running(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        snapshots: list[ProcessingJob | None] = []

        async def processor(submission: ContentSubmission, context: JobContext) -> None:
            await context.report_progress(40, "scripting")
            snapshots.append(await job_store.get(context.job.id))

        runner = _runner(job_store, submission_store, processor, retry_executor, events, published)
        _, job = await _queue(submission_store, job_store)

        await runner.run(job)

        snapshot = snapshots[0]
        assert snapshot is not None
        assert snapshot.status == JobStatus.RUNNING
        assert snapshot.progress == 40
        assert snapshot.current_step == "scripting"
        assert published == []

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_fail_job(
        self, job_store, submission_store, retry_executor
    ) -> None:
        sink = AsyncMock(side_effect=RuntimeError("bus down"))
        runner = JobRunner(
            job_store,
            submission_store,
            ScriptedProcessor(),
            retry_executor=retry_executor,
            event_sink=sink,
        )
        _, job = await _queue(submission_store, job_store)

        result = await runner.run(job)

        assert result.status == JobStatus.COMPLETED
        sink.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_submission(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        runner = _runner(
            job_store, submission_store, ScriptedProcessor(), retry_executor, events, published
        )
        job = ProcessingJob.create_for_submission("sub_missing")

        with pytest.raises(ValidationError):
            await runner.run(job)

    @pytest.mark.asyncio
    async def test_run_submission_looks_up_job(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        runner = _runner(
            job_store, submission_store, ScriptedProcessor(), retry_executor, events, published
        )
        submission, _ = await _queue(submission_store, job_store)

        result = await runner.run_submission(submission.id)

        assert result.status == JobStatus.COMPLETED
        with pytest.raises(ValidationError):
            await runner.run_submission("sub_unknown")


class TestRunPending:
    @pytest.mark.asyncio
    async def test_runs_queued_jobs_and_continues_past_failures(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        processor = ScriptedProcessor(errors=[ValueError("bad input")])
        runner = _runner(job_store, submission_store, processor, retry_executor, events, published)
        _, first = await _queue(submission_store, job_store)
        _, second = await _queue(submission_store, job_store)

        completed = await runner.run_pending()

        assert [job.id for job in completed] == [second.id]
        first_stored = await job_store.get(first.id)
        assert first_stored is not None and first_stored.status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_limit(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        runner = _runner(
            job_store, submission_store, ScriptedProcessor(), retry_executor, events, published
        )
        for _ in range(3):
            await _queue(submission_store, job_store)

        completed = await runner.run_pending(limit=2)

        assert len(completed) == 2
        assert len(await job_store.list_by_status(JobStatus.QUEUED)) == 1


class TestRecoverStale:
    async def _stale_running_job(
        self,
        submission_store: InMemorySubmissionStore,
        job_store: InMemoryJobStore,
        retry_count: int,
        max_retries: int,
    ) -> ProcessingJob:
        submission = SubmissionStateMachine.create("https://example.com/article", "url")
        submission = SubmissionStateMachine.transition(submission, SubmissionStatus.PROCESSING)
        await submission_store.save(submission)
        old = datetime.now(UTC) - timedelta(hours=30)
        job = ProcessingJob(
            submission_id=submission.id,
            status=JobStatus.RUNNING,
            progress=60,
            retry_count=retry_count,
            max_retries=max_retries,
            started_at=old,
            created_at=old,
            updated_at=old,
        )
        await job_store.save(job)
        return job

    @pytest.mark.asyncio
    async def test_stale_job_is_requeued(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        runner = _runner(
            job_store, submission_store, ScriptedProcessor(), retry_executor, events, published
        )
        job = await self._stale_running_job(submission_store, job_store, 0, 2)

        recovered = await runner.recover_stale(24)

        assert len(recovered) == 1
        assert recovered[0].status == JobStatus.QUEUED
        assert recovered[0].retry_count == 1
        assert recovered[0].progress == 0
        assert events.events[0].status == JobStatus.FAILED
        assert events.events[0].error_message == STALE_JOB_MESSAGE.format(hours=24)
        stored = await submission_store.get(job.submission_id)
        assert stored is not None and stored.status == SubmissionStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_stale_job_without_retries_fails_submission(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        runner = _runner(
            job_store, submission_store, ScriptedProcessor(), retry_executor, events, published
        )
        job = await self._stale_running_job(submission_store, job_store, 2, 2)

        recovered = await runner.recover_stale(24)

        assert recovered[0].status == JobStatus.FAILED
        stored = await submission_store.get(job.submission_id)
        assert stored is not None and stored.status == SubmissionStatus.FAILED
        assert stored.error_message == STALE_JOB_MESSAGE.format(hours=24)

    @pytest.mark.asyncio
    async def test_recent_and_queued_jobs_are_left_alone(
        self, job_store, submission_store, retry_executor, events, published
    ) -> None:
        runner = _runner(
            job_store, submission_store, ScriptedProcessor(), retry_executor, events, published
        )
        await _queue(submission_store, job_store)

        assert await runner.recover_stale(24) == []
        assert events.events == []
