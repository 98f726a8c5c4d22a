"""Submission intake and status lookup."""

import asyncio
from dataclasses import dataclass
from typing import Any

from podcaster.core.errors import PipelineError
from podcaster.core.logging import get_logger
from podcaster.models.job import DEFAULT_MAX_RETRIES, ProcessingJob
from podcaster.models.submission import ContentKind, SubmissionStateMachine
from podcaster.services.job_runner import JobRunner
from podcaster.services.stores import JobStore, SubmissionStore

logger = get_logger(__name__)


class SubmissionNotFoundError(LookupError):
    """No job is tracking the requested submission."""

    def __init__(self, submission_id: str) -> None:
        super().__init__(f"No processing job found for submission {submission_id}")
        self.submission_id = submission_id


@dataclass(frozen=True)
class SubmissionReceipt:
    submission_id: str
    job_id: str
    status: str


@dataclass(frozen=True)
class JobStatusView:
    """Caller-facing view of a submission's job."""

    submission_id: str
    job_id: str
    status: str
    progress: int
    current_step: str | None
    error_message: str | None
    retry_count: int
    max_retries: int
    status_display: str

    @classmethod
    def from_job(cls, job: ProcessingJob) -> "JobStatusView":
        return cls(
            submission_id=job.submission_id,
            job_id=job.id,
            status=job.status.value,
            progress=job.progress,
            current_step=job.current_step,
            error_message=job.error_message,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            status_display=job.status_display,
        )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "submission_id": self.submission_id,
            "job_id": self.job_id,
            "status": self.status,
            "progress": self.progress,
            "current_step": self.current_step,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "status_display": self.status_display,
        }
        if self.error_message is not None:
            data["error_message"] = self.error_message
        return data


class SubmissionService:
    """Creates submissions with their jobs and reports job status.

    When a :class:`JobRunner` is attached, new jobs are started in background
    tasks owned by the service; otherwise they stay queued for a worker.
    """

    def __init__(
        self,
        submissions: SubmissionStore,
        jobs: JobStore,
        runner: JobRunner | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self.submissions = submissions
        self.jobs = jobs
        self.runner = runner
        self.max_retries = max_retries
        self._tasks: set[asyncio.Task[Any]] = set()

    async def submit(
        self, source_url: str, content_kind: ContentKind | str, note: str | None = None
    ) -> SubmissionReceipt:
        """Validate and store a submission, then queue its job.

        Raises:
            ValidationError: If the URL or content kind is rejected
        """
        submission = SubmissionStateMachine.create(source_url, content_kind, note)
        submission_id = await self.submissions.save(submission)
        job = ProcessingJob.create_for_submission(submission_id, max_retries=self.max_retries)
        await self.jobs.save(job)

        logger.info(
            "submission_created",
            submission_id=submission_id,
            job_id=job.id,
            content_kind=submission.content_kind.value,
        )

        if self.runner is not None:
            self._schedule(self.runner, job)
        return SubmissionReceipt(
            submission_id=submission_id, job_id=job.id, status=submission.status.value
        )

    async def submit_content(
        self, source_url: str, content_kind: ContentKind | str, note: str | None = None
    ) -> str:
        """Like :meth:`submit` but return only the submission id."""
        receipt = await self.submit(source_url, content_kind, note)
        return receipt.submission_id

    async def get_job_status(self, submission_id: str) -> JobStatusView:
        """Status of the job tracking ``submission_id``.

        Raises:
            SubmissionNotFoundError: If no job exists for the submission
        """
        job = await self.jobs.get_by_submission_id(submission_id)
        if job is None:
            raise SubmissionNotFoundError(submission_id)
        return JobStatusView.from_job(job)

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait for every background job started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel background jobs that are still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        if tasks:
            logger.info("submission_tasks_cancelled", count=len(tasks))

    def _schedule(self, runner: JobRunner, job: ProcessingJob) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run_job(runner, job), name=f"job-{job.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_job(self, runner: JobRunner, job: ProcessingJob) -> None:
        try:
            await runner.run(job)
        except PipelineError as e:
            logger.error("background_job_failed", job_id=job.id, **e.to_dict())
        except Exception as e:
            logger.error(
                "background_job_failed",
                job_id=job.id,
                error=str(e),
                error_type=type(e).__name__,
            )
