"""Tests for the in-memory collaborators."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from podcaster.core.errors import InvalidTransition
from podcaster.models.episode import Episode
from podcaster.models.job import JobStatus, ProcessingJob
from podcaster.models.submission import SubmissionStateMachine, SubmissionStatus
from podcaster.services.stores import (
    EpisodeSource,
    InMemoryEpisodeSource,
    InMemoryJobStore,
    InMemorySubmissionStore,
    JobStore,
    SubmissionStore,
)


def test_in_memory_stores_satisfy_protocols() -> None:
    assert isinstance(InMemorySubmissionStore(), SubmissionStore)
    assert isinstance(InMemoryJobStore(), JobStore)
    assert isinstance(InMemoryEpisodeSource(), EpisodeSource)


@pytest.mark.asyncio
async def test_submission_store_update_status(
    submission_store: InMemorySubmissionStore,
) -> None:
    submission = SubmissionStateMachine.create("https://example.com/a", "url")
    await submission_store.save(submission)

    processing = await submission_store.update_status(
        submission.id, SubmissionStatus.PROCESSING
    )
    failed = await submission_store.update_status(submission.id, SubmissionStatus.FAILED)

    assert processing is not None and processing.status == SubmissionStatus.PROCESSING
    assert failed is not None
    assert failed.error_message == "Processing failed"
    assert failed.processed_at is not None
    assert await submission_store.update_status("sub_missing", SubmissionStatus.FAILED) is None


@pytest.mark.asyncio
async def test_submission_store_keeps_failure_reason(
    submission_store: InMemorySubmissionStore,
) -> None:
    submission = SubmissionStateMachine.create("https://example.com/a", "url")
    await submission_store.save(submission)
    await submission_store.update_status(submission.id, SubmissionStatus.PROCESSING)

    failed = await submission_store.update_status(
        submission.id, SubmissionStatus.FAILED, "tts: quota exceeded"
    )

    assert failed is not None
    assert failed.error_message == "tts: quota exceeded"


@pytest.mark.asyncio
async def test_submission_store_rejects_invalid_edges(
    submission_store: InMemorySubmissionStore,
) -> None:
    submission = SubmissionStateMachine.create("https://example.com/a", "url")
    await submission_store.save(submission)

    with pytest.raises(InvalidTransition):
        await submission_store.update_status(submission.id, SubmissionStatus.COMPLETED)

    stored = await submission_store.get(submission.id)
    assert stored is not None and stored.status == SubmissionStatus.PENDING


@pytest.mark.asyncio
async def test_job_store_lookups(job_store: InMemoryJobStore) -> None:
    queued = ProcessingJob.create_for_submission("sub_1")
    running = ProcessingJob.create_for_submission("sub_2").start()
    await job_store.save(queued)
    await job_store.save(running)

    assert await job_store.get_by_submission_id("sub_2") == running
    assert await job_store.get_by_submission_id("sub_3") is None
    assert await job_store.list_by_status(JobStatus.QUEUED) == [queued]
    assert await job_store.list_by_status(JobStatus.COMPLETED) == []


@pytest.mark.asyncio
async def test_job_store_list_stale(job_store: InMemoryJobStore) -> None:
    old = datetime.now(UTC) - timedelta(hours=48)
    stale = ProcessingJob(submission_id="sub_old", created_at=old, updated_at=old)
    finished = ProcessingJob(
        submission_id="sub_done",
        status=JobStatus.COMPLETED,
        progress=100,
        started_at=old,
        completed_at=old,
        created_at=old,
        updated_at=old,
    )
    fresh = ProcessingJob.create_for_submission("sub_new")
    for job in (stale, finished, fresh):
        await job_store.save(job)

    assert await job_store.list_stale(24) == [stale]


@pytest.mark.asyncio
async def test_episode_source_orders_newest_first(
    episode_source: InMemoryEpisodeSource, episode_factory: Callable[..., Episode]
) -> None:
    await episode_source.publish(episode_factory(7))

    listed = await episode_source.list_episodes(limit=2)

    assert [ep.id for ep in listed] == ["ep7", "ep3"]
    assert await episode_source.count() == 4
    assert [ep.id for ep in await episode_source.list_episodes(limit=10, offset=3)] == ["ep1"]


@pytest.mark.asyncio
async def test_episode_source_remove(episode_source: InMemoryEpisodeSource) -> None:
    assert await episode_source.remove("ep1") is True
    assert await episode_source.remove("ep1") is False
    assert await episode_source.count() == 2
