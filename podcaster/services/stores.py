"""Persistence collaborator interfaces and in-memory implementations.

The durable stores live outside this package; the protocols below are the
shapes the core relies on. The in-memory versions back local development and
the test suite.
"""

from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

from podcaster.core.logging import get_logger
from podcaster.models.episode import Episode
from podcaster.models.job import JobStatus, ProcessingJob
from podcaster.models.submission import (
    ContentSubmission,
    SubmissionStateMachine,
    SubmissionStatus,
)

logger = get_logger(__name__)

DEFAULT_FAILURE_MESSAGE = "Processing failed"


@runtime_checkable
class SubmissionStore(Protocol):
    """Durable storage for content submissions."""

    async def save(self, submission: ContentSubmission) -> str: ...

    async def get(self, submission_id: str) -> ContentSubmission | None: ...

    async def update_status(
        self,
        submission_id: str,
        status: SubmissionStatus,
        error_message: str | None = None,
    ) -> ContentSubmission | None: ...


@runtime_checkable
class JobStore(Protocol):
    """Durable storage for processing jobs."""

    async def save(self, job: ProcessingJob) -> None: ...

    async def get(self, job_id: str) -> ProcessingJob | None: ...

    async def get_by_submission_id(self, submission_id: str) -> ProcessingJob | None: ...

    async def list_by_status(self, status: JobStatus) -> list[ProcessingJob]: ...

    async def list_stale(self, older_than_hours: float) -> list[ProcessingJob]: ...


@runtime_checkable
class EpisodeSource(Protocol):
    """Read side of the published episode collection."""

    async def list_episodes(self, limit: int, offset: int = 0) -> list[Episode]: ...

    async def count(self) -> int: ...


class InMemorySubmissionStore:
    """Dict-backed :class:`SubmissionStore`."""

    def __init__(self) -> None:
        self._items: dict[str, ContentSubmission] = {}

    async def save(self, submission: ContentSubmission) -> str:
        self._items[submission.id] = submission
        return submission.id

    async def get(self, submission_id: str) -> ContentSubmission | None:
        return self._items.get(submission_id)

    async def update_status(
        self,
        submission_id: str,
        status: SubmissionStatus,
        error_message: str | None = None,
    ) -> ContentSubmission | None:
        current = self._items.get(submission_id)
        if current is None:
            return None
        error = None
        if status == SubmissionStatus.FAILED:
            error = error_message or DEFAULT_FAILURE_MESSAGE
        updated = SubmissionStateMachine.transition(current, status, error_message=error)
        self._items[submission_id] = updated
        return updated

    def __len__(self) -> int:
        return len(self._items)


class InMemoryJobStore:
    """Dict-backed :class:`JobStore`."""

    def __init__(self) -> None:
        self._items: dict[str, ProcessingJob] = {}
        self._by_submission: dict[str, str] = {}

    async def save(self, job: ProcessingJob) -> None:
        self._items[job.id] = job
        self._by_submission[job.submission_id] = job.id

    async def get(self, job_id: str) -> ProcessingJob | None:
        return self._items.get(job_id)

    async def get_by_submission_id(self, submission_id: str) -> ProcessingJob | None:
        job_id = self._by_submission.get(submission_id)
        return self._items.get(job_id) if job_id else None

    async def list_by_status(self, status: JobStatus) -> list[ProcessingJob]:
        jobs = [job for job in self._items.values() if job.status == status]
        return sorted(jobs, key=lambda job: job.created_at)

    async def list_stale(self, older_than_hours: float) -> list[ProcessingJob]:
        """Non-terminal jobs not updated for ``older_than_hours``."""
        cutoff = datetime.now(UTC) - timedelta(hours=older_than_hours)
        return [
            job
            for job in self._items.values()
            if not job.is_terminal and job.updated_at < cutoff
        ]


class InMemoryEpisodeSource:
    """Episode collection kept in memory, newest first."""

    def __init__(self, episodes: list[Episode] | None = None) -> None:
        self._episodes: dict[str, Episode] = {}
        for episode in episodes or []:
            self._episodes[episode.id] = episode

    async def list_episodes(self, limit: int, offset: int = 0) -> list[Episode]:
        ordered = sorted(
            self._episodes.values(), key=lambda ep: ep.published_at, reverse=True
        )
        return ordered[offset : offset + limit]

    async def count(self) -> int:
        return len(self._episodes)

    async def publish(self, episode: Episode) -> None:
        """Add or replace an episode."""
        self._episodes[episode.id] = episode
        logger.info("episode_published", episode_id=episode.id, feed=episode.feed_slug)

    async def remove(self, episode_id: str) -> bool:
        return self._episodes.pop(episode_id, None) is not None
