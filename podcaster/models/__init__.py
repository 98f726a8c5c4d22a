"""Domain models."""

from .episode import Episode
from .job import JobStateMachine, JobStatus, ProcessingJob
from .submission import (
    ContentKind,
    ContentSubmission,
    SubmissionStateMachine,
    SubmissionStatus,
)
from .transitions import TransitionOutcome

__all__ = [
    "ContentKind",
    "ContentSubmission",
    "Episode",
    "JobStateMachine",
    "JobStatus",
    "ProcessingJob",
    "SubmissionStateMachine",
    "SubmissionStatus",
    "TransitionOutcome",
]
