"""Drives processing jobs through their lifecycle.

One run of a job is a sequence of attempts executed by the
:class:`RetryExecutor`. Each attempt walks ``queued -> running ->
{completed, failed}``; a retryable failure with retries left is re-queued and
attempted again after the backoff. The submission follows along: it enters
``processing`` with the first attempt and settles when the job does.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from podcaster.core.errors import PipelineError, ValidationError, is_retryable
from podcaster.core.logging import get_logger
from podcaster.core.metrics import JOB_RETRIES
from podcaster.core.retry import RetryConfig, RetryExecutor, ServiceType
from podcaster.feed.invalidation import JobTerminalEvent
from podcaster.models.episode import Episode
from podcaster.models.job import JobStatus, ProcessingJob
from podcaster.models.submission import ContentSubmission, SubmissionStatus
from podcaster.services.stores import JobStore, SubmissionStore

logger = get_logger(__name__)

EventSink = Callable[[JobTerminalEvent], Awaitable[Any]]
EpisodePublisher = Callable[[Episode], Awaitable[Any]]

STALE_JOB_MESSAGE = "Job went stale: no progress for {hours} hours"

# Backoff between job attempts; the attempt count comes from the job itself
JOB_RETRY_CONFIG = RetryConfig(base_delay_ms=2000, max_delay_ms=30000)


class Processor(Protocol):
    """Turns a submission into an episode (extraction, script, TTS, upload)."""

    async def __call__(
        self, submission: ContentSubmission, context: "JobContext"
    ) -> Episode | None: ...


class JobContext:
    """Handle given to a processor for one attempt."""

    def __init__(self, runner: "JobRunner", job: ProcessingJob) -> None:
        self._runner = runner
        self.job = job

    async def report_progress(self, progress: int, step: str | None = None) -> ProcessingJob:
        """Record progress of the running attempt.

        Raises:
            InvalidJobTransition: If progress is out of range or goes backwards
        """
        self.job = self.job.update_progress(progress, step)
        await self._runner.save_job(self.job)
        return self.job

    async def call_external(
        self,
        operation: Callable[[], Awaitable[Any]],
        service: ServiceType = "api",
        name: str | None = None,
    ) -> Any:
        """Call a collaborator under its service retry preset."""
        return await self._runner.retry_executor.execute(
            operation, RetryConfig.for_service(service), name=name
        )


@dataclass
class _RunState:
    job: ProcessingJob
    submission: ContentSubmission


class JobRunner:
    """Executes queued jobs with a :class:`Processor`."""

    def __init__(
        self,
        jobs: JobStore,
        submissions: SubmissionStore,
        processor: Processor,
        retry_executor: RetryExecutor | None = None,
        event_sink: EventSink | None = None,
        publish_episode: EpisodePublisher | None = None,
        feed_slug: str = "default",
        job_retry: RetryConfig = JOB_RETRY_CONFIG,
    ) -> None:
        """Initialize runner.

        Args:
            jobs: Job store
            submissions: Submission store
            processor: Work performed by each attempt
            retry_executor: Executor for attempts and store calls
            event_sink: Receives an event on every terminal transition
            publish_episode: Publishes a produced episode before the job completes
            feed_slug: Feed affected by jobs whose episode does not name one
            job_retry: Backoff between attempts
        """
        self.jobs = jobs
        self.submissions = submissions
        self.processor = processor
        self.retry_executor = retry_executor or RetryExecutor()
        self.event_sink = event_sink
        self.publish_episode = publish_episode
        self.feed_slug = feed_slug
        self.job_retry = job_retry

    async def run(self, job: ProcessingJob) -> ProcessingJob:
        """Run a queued job until it completes or gives up.

        Returns:
            The completed job

        Raises:
            RetryExhaustedError: If every allowed attempt failed with a
                retryable error
            Exception: A non-retryable processor error, unchanged, after the
                job and submission were failed
        """
        submission = await self.submissions.get(job.submission_id)
        if submission is None:
            raise ValidationError(
                f"Submission {job.submission_id} not found", field="submission_id"
            )

        state = _RunState(job, submission)

        async def attempt() -> ProcessingJob:
            return await self._attempt(state)

        config = self.job_retry.with_overrides(
            max_attempts=job.remaining_retries + 1, retry_condition=is_retryable
        )
        result = await self.retry_executor.execute_with_metadata(
            attempt, config, name=f"job {job.id}"
        )
        logger.info("job_finished", attempts=result.attempts, **result.result.summary())
        return result.result

    async def run_submission(self, submission_id: str) -> ProcessingJob:
        job = await self.jobs.get_by_submission_id(submission_id)
        if job is None:
            raise ValidationError(
                f"No job for submission {submission_id}", field="submission_id"
            )
        return await self.run(job)

    async def run_pending(self, limit: int | None = None) -> list[ProcessingJob]:
        """Run queued jobs oldest first.

        Failures are logged and the loop moves on to the next job.

        Returns:
            Jobs that completed
        """
        queued = await self.jobs.list_by_status(JobStatus.QUEUED)
        if limit is not None:
            queued = queued[:limit]

        completed = []
        for job in queued:
            try:
                completed.append(await self.run(job))
            except PipelineError as e:
                logger.error("job_run_failed", job_id=job.id, **e.to_dict())
            except Exception as e:
                logger.error(
                    "job_run_failed", job_id=job.id, error=str(e), error_type=type(e).__name__
                )
        return completed

    async def recover_stale(self, older_than_hours: float) -> list[ProcessingJob]:
        """Fail running jobs that stopped reporting, and re-queue them when allowed.

        Returns:
            The recovered jobs in their new state
        """
        recovered = []
        for job in await self.jobs.list_stale(older_than_hours):
            if job.status != JobStatus.RUNNING:
                continue
            failed = job.fail(STALE_JOB_MESSAGE.format(hours=older_than_hours))
            await self.save_job(failed)
            if failed.can_retry():
                current = failed.retry()
                await self.save_job(current)
                JOB_RETRIES.inc()
            else:
                current = failed
                await self._settle_submission(
                    job.submission_id, SubmissionStatus.FAILED, failed.error_message
                )
            await self._emit(failed, None)
            logger.warning("stale_job_recovered", **current.summary())
            recovered.append(current)
        return recovered

    async def save_job(self, job: ProcessingJob) -> None:
        await self.retry_executor.execute(
            lambda: self.jobs.save(job),
            RetryConfig.for_service("database"),
            name="job_store.save",
        )

    # Internals

    async def _attempt(self, state: _RunState) -> ProcessingJob:
        job = state.job
        submission = state.submission

        if job.status == JobStatus.FAILED:
            job = job.retry()
            await self.save_job(job)
            JOB_RETRIES.inc()
            logger.info("job_requeued", **job.summary())

        job = job.start()
        await self.save_job(job)
        if submission.status == SubmissionStatus.PENDING:
            updated = await self._settle_submission(submission.id, SubmissionStatus.PROCESSING)
            if updated is not None:
                submission = state.submission = updated

        context = JobContext(self, job)
        try:
            episode = await self.processor(submission, context)
            if episode is not None and self.publish_episode is not None:
                await self.publish_episode(episode)
        except Exception as error:
            message = str(error) or type(error).__name__
            job = context.job.fail(message)
            state.job = job
            await self.save_job(job)
            if not (is_retryable(error) and job.can_retry()):
                await self._settle_submission(
                    submission.id, SubmissionStatus.FAILED, job.error_message
                )
            logger.warning(
                "job_attempt_failed",
                error=message,
                retryable=is_retryable(error),
                **job.summary(),
            )
            await self._emit(job, None)
            raise

        job = context.job.complete()
        state.job = job
        await self.save_job(job)
        await self._settle_submission(submission.id, SubmissionStatus.COMPLETED)
        await self._emit(job, episode)
        return job

    async def _settle_submission(
        self,
        submission_id: str,
        status: SubmissionStatus,
        error_message: str | None = None,
    ) -> ContentSubmission | None:
        return await self.retry_executor.execute(
            lambda: self.submissions.update_status(submission_id, status, error_message),
            RetryConfig.for_service("database"),
            name="submission_store.update_status",
        )

    async def _emit(self, job: ProcessingJob, episode: Episode | None) -> None:
        if self.event_sink is None:
            return
        event = JobTerminalEvent(
            job_id=job.id,
            submission_id=job.submission_id,
            status=job.status,
            feed_slug=episode.feed_slug if episode is not None else self.feed_slug,
            error_message=job.error_message,
        )
        try:
            await self.event_sink(event)
        except Exception as e:
            logger.error(
                "job_event_delivery_failed",
                job_id=job.id,
                status=job.status.value,
                error=str(e),
            )
