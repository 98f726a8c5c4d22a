"""Processing job model and its lifecycle.

A job tracks one attempt-chain of turning a submission into an episode. It is
kept separate from the submission so retries never change the submission's
identity. Jobs are immutable: every transition returns a new value.
"""

import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from podcaster.core.errors import InvalidJobTransition
from podcaster.core.metrics import JOB_TRANSITIONS
from podcaster.models.transitions import TransitionOutcome

DEFAULT_MAX_RETRIES = 3


class JobStatus(str, Enum):
    """Job status enum."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class ProcessingJob(BaseModel):
    """Background processing job for one content submission."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    submission_id: str = Field(min_length=1)
    status: JobStatus = JobStatus.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    current_step: str | None = None
    error_message: str | None = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def check_invariants(self) -> "ProcessingJob":
        if self.retry_count > self.max_retries:
            raise ValueError("Retry count cannot exceed max retries")

        if self.status == JobStatus.QUEUED and self.started_at is not None:
            raise ValueError("Queued jobs have no start timestamp")
        if self.status != JobStatus.QUEUED and self.started_at is None:
            raise ValueError(f'Started timestamp is required when status is "{self.status.value}"')

        terminal = self.status in TERMINAL_JOB_STATES
        if terminal and self.completed_at is None:
            raise ValueError("Completed timestamp is required for terminal jobs")
        if not terminal and self.completed_at is not None:
            raise ValueError("Completed timestamp is only set on terminal jobs")

        failed = self.status == JobStatus.FAILED
        if failed and not (self.error_message and self.error_message.strip()):
            raise ValueError('Error message is required when status is "failed"')
        if not failed and self.error_message is not None:
            raise ValueError("Error message is only set on failed jobs")

        if self.started_at and self.completed_at and self.started_at > self.completed_at:
            raise ValueError("Started timestamp cannot be after completed timestamp")
        return self

    # Transitions

    def start(self, now: datetime | None = None) -> "ProcessingJob":
        return JobStateMachine.transition(self, JobStatus.RUNNING, now=now)

    def update_progress(
        self, progress: int, current_step: str | None = None, now: datetime | None = None
    ) -> "ProcessingJob":
        return JobStateMachine.transition(
            self, JobStatus.RUNNING, progress=progress, current_step=current_step, now=now
        )

    def complete(self, now: datetime | None = None) -> "ProcessingJob":
        return JobStateMachine.transition(self, JobStatus.COMPLETED, now=now)

    def fail(self, error_message: str, now: datetime | None = None) -> "ProcessingJob":
        return JobStateMachine.transition(
            self, JobStatus.FAILED, error_message=error_message, now=now
        )

    def retry(self, now: datetime | None = None) -> "ProcessingJob":
        return JobStateMachine.transition(self, JobStatus.QUEUED, now=now)

    # Queries

    def can_retry(self) -> bool:
        return self.status == JobStatus.FAILED and self.retry_count < self.max_retries

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATES

    @property
    def remaining_retries(self) -> int:
        return max(0, self.max_retries - self.retry_count)

    def processing_duration(self, now: datetime | None = None) -> timedelta | None:
        """Time between start and completion (or now, while running)."""
        if self.started_at is None:
            return None
        end = self.completed_at or now or datetime.now(UTC)
        return end - self.started_at

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or datetime.now(UTC)) - self.created_at

    def is_stale(self, max_age_hours: float = 24, now: datetime | None = None) -> bool:
        return self.age(now) > timedelta(hours=max_age_hours)

    @property
    def status_display(self) -> str:
        if self.status == JobStatus.RUNNING:
            return f"Running ({self.progress}%)"
        if self.status == JobStatus.FAILED:
            return f"Failed ({self.retry_count}/{self.max_retries} retries)"
        return self.status.value.capitalize()

    def summary(self, now: datetime | None = None) -> dict[str, Any]:
        """Compact representation for structured logs."""
        duration = self.processing_duration(now)
        return {
            "job_id": self.id,
            "submission_id": self.submission_id,
            "status": self.status.value,
            "progress": self.progress,
            "current_step": self.current_step,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "age_seconds": int(self.age(now).total_seconds()),
            "processing_duration_seconds": (
                int(duration.total_seconds()) if duration is not None else None
            ),
        }

    @classmethod
    def create_for_submission(
        cls, submission_id: str, max_retries: int = DEFAULT_MAX_RETRIES
    ) -> "ProcessingJob":
        now = datetime.now(UTC)
        return cls(
            submission_id=submission_id,
            max_retries=max_retries,
            created_at=now,
            updated_at=now,
        )


class JobStateMachine:
    """Transition table and guards for :class:`ProcessingJob`.

    | From    | To      | Guard / effect                                       |
    |---------|---------|------------------------------------------------------|
    | queued  | running | sets started_at                                      |
    | running | running | progress update, 0 <= p <= 100, never decreasing     |
    | running | completed | progress = 100, sets completed_at                  |
    | running | failed  | non-empty error message, sets completed_at           |
    | failed  | queued  | retry_count < max_retries; clears run state          |
    """

    TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
        JobStatus.QUEUED: frozenset({JobStatus.RUNNING}),
        JobStatus.RUNNING: frozenset(
            {JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED}
        ),
        JobStatus.COMPLETED: frozenset(),
        JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    }

    @classmethod
    def allowed_targets(cls, current: JobStatus) -> frozenset[JobStatus]:
        return cls.TRANSITIONS[current]

    @classmethod
    def transition(
        cls,
        job: ProcessingJob,
        target: JobStatus,
        *,
        progress: int | None = None,
        current_step: str | None = None,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> ProcessingJob:
        """Apply one edge of the table.

        ``running -> running`` is the progress update and needs ``progress``.

        Raises:
            InvalidJobTransition: If the edge is missing or its guard fails
        """
        current = job.status
        if target not in cls.TRANSITIONS[current]:
            raise InvalidJobTransition(current.value, target.value)

        timestamp = now or datetime.now(UTC)
        changes: dict[str, Any] = {"status": target, "updated_at": timestamp}

        if current == JobStatus.QUEUED:
            changes["started_at"] = timestamp
            if current_step is not None:
                changes["current_step"] = current_step

        elif target == JobStatus.RUNNING:
            if progress is None:
                raise InvalidJobTransition(
                    current.value, target.value, "progress is required"
                )
            if not 0 <= progress <= 100:
                raise InvalidJobTransition(
                    current.value, target.value, "Progress must be between 0 and 100"
                )
            if progress < job.progress:
                raise InvalidJobTransition(
                    current.value,
                    target.value,
                    f"progress cannot decrease ({job.progress} -> {progress})",
                )
            changes["progress"] = progress
            if current_step is not None:
                changes["current_step"] = current_step

        elif target == JobStatus.COMPLETED:
            changes["progress"] = 100
            changes["completed_at"] = _not_before(timestamp, job.started_at)

        elif target == JobStatus.FAILED:
            if not (error_message and error_message.strip()):
                raise InvalidJobTransition(
                    current.value, target.value, "error message is required"
                )
            changes["error_message"] = error_message
            changes["completed_at"] = _not_before(timestamp, job.started_at)

        elif target == JobStatus.QUEUED:
            if job.retry_count >= job.max_retries:
                raise InvalidJobTransition(
                    current.value, target.value, "Maximum retry attempts exceeded"
                )
            changes.update(
                retry_count=job.retry_count + 1,
                progress=0,
                current_step=None,
                error_message=None,
                started_at=None,
                completed_at=None,
            )

        updated = ProcessingJob(**{**job.model_dump(), **changes})
        if current != target:
            JOB_TRANSITIONS.labels(from_status=current.value, to_status=target.value).inc()
        return updated

    @classmethod
    def try_transition(
        cls, job: ProcessingJob, target: JobStatus, **kwargs: Any
    ) -> TransitionOutcome[ProcessingJob]:
        """Non-raising variant of :meth:`transition`."""
        try:
            return TransitionOutcome(cls.transition(job, target, **kwargs))
        except InvalidJobTransition as e:
            return TransitionOutcome(job, e)


def _not_before(timestamp: datetime, started_at: datetime | None) -> datetime:
    # Clock skew between processes must not break started_at <= completed_at
    if started_at is not None and timestamp < started_at:
        return started_at
    return timestamp
