"""Content submission model and its lifecycle."""

import re
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, model_validator

from podcaster.core.errors import InvalidTransition, ValidationError
from podcaster.models.transitions import TransitionOutcome

YOUTUBE_URL_PATTERN = re.compile(r"^https?://(www\.)?(youtube\.com|youtu\.be)/.+")
MAX_NOTE_LENGTH = 2000


class ContentKind(str, Enum):
    """Kind of content referenced by a submission."""

    URL = "url"
    YOUTUBE = "youtube"
    PDF = "pdf"
    DOCUMENT = "document"


class SubmissionStatus(str, Enum):
    """Submission status enum."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_SUBMISSION_STATES = frozenset(
    {SubmissionStatus.COMPLETED, SubmissionStatus.FAILED}
)


class ContentSubmission(BaseModel):
    """A user-facing record of one content item to be turned into an episode."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"sub_{uuid.uuid4().hex}")
    source_url: str
    content_kind: ContentKind
    status: SubmissionStatus = SubmissionStatus.PENDING
    note: str | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    processed_at: datetime | None = None

    @model_validator(mode="after")
    def check_invariants(self) -> "ContentSubmission":
        """Error message iff failed; processed_at iff terminal."""
        failed = self.status == SubmissionStatus.FAILED
        if failed and not (self.error_message and self.error_message.strip()):
            raise ValueError("error_message is required when status is failed")
        if not failed and self.error_message is not None:
            raise ValueError("error_message is only allowed when status is failed")

        terminal = self.status in TERMINAL_SUBMISSION_STATES
        if terminal and self.processed_at is None:
            raise ValueError("processed_at is required once the submission is terminal")
        if not terminal and self.processed_at is not None:
            raise ValueError("processed_at must not be set before a terminal state")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SUBMISSION_STATES

    @property
    def title(self) -> str:
        return self.note or self.source_url


class SubmissionStateMachine:
    """Lifecycle of a content submission.

    ``pending -> processing -> {completed, failed}``. Both terminal states have
    no outgoing transitions. Every operation returns a new submission.
    """

    TRANSITIONS: dict[SubmissionStatus, frozenset[SubmissionStatus]] = {
        SubmissionStatus.PENDING: frozenset({SubmissionStatus.PROCESSING}),
        SubmissionStatus.PROCESSING: frozenset(
            {SubmissionStatus.COMPLETED, SubmissionStatus.FAILED}
        ),
        SubmissionStatus.COMPLETED: frozenset(),
        SubmissionStatus.FAILED: frozenset(),
    }

    @classmethod
    def allowed_targets(cls, current: SubmissionStatus) -> frozenset[SubmissionStatus]:
        return cls.TRANSITIONS[current]

    @classmethod
    def check(cls, current: SubmissionStatus, target: SubmissionStatus) -> None:
        """Raise InvalidTransition unless ``current -> target`` is an edge."""
        if target not in cls.TRANSITIONS[current]:
            raise InvalidTransition(current.value, target.value)

    @classmethod
    def transition(
        cls,
        submission: ContentSubmission,
        target: SubmissionStatus,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> ContentSubmission:
        """Move a submission to ``target``.

        Args:
            submission: Current value, left untouched
            target: Desired status
            error_message: Required when ``target`` is failed
            now: Timestamp override

        Returns:
            New submission value

        Raises:
            InvalidTransition: If the edge does not exist or its guard fails
        """
        cls.check(submission.status, target)

        if target == SubmissionStatus.FAILED and not (
            error_message and error_message.strip()
        ):
            raise InvalidTransition(
                submission.status.value, target.value, "error message is required"
            )

        timestamp = now or datetime.now(UTC)
        changes: dict[str, Any] = {"status": target, "updated_at": timestamp}
        if target in TERMINAL_SUBMISSION_STATES:
            changes["processed_at"] = timestamp
        if target == SubmissionStatus.FAILED:
            changes["error_message"] = error_message
        return _evolve(submission, **changes)

    @classmethod
    def try_transition(
        cls,
        submission: ContentSubmission,
        target: SubmissionStatus,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> TransitionOutcome[ContentSubmission]:
        """Non-raising variant of :meth:`transition`."""
        try:
            return TransitionOutcome(
                cls.transition(submission, target, error_message, now)
            )
        except InvalidTransition as e:
            return TransitionOutcome(submission, e)

    @classmethod
    def create(
        cls,
        source_url: str,
        content_kind: ContentKind | str,
        note: str | None = None,
        now: datetime | None = None,
    ) -> ContentSubmission:
        """Validate input and build a new pending submission.

        Raises:
            ValidationError: If the kind is unknown or the URL is malformed
        """
        try:
            kind = ContentKind(content_kind)
        except ValueError:
            allowed = ", ".join(k.value for k in ContentKind)
            raise ValidationError(
                f"content_kind must be one of: {allowed}", field="content_kind"
            ) from None

        url = (source_url or "").strip()
        validate_source_url(url, kind)

        if note is not None and len(note) > MAX_NOTE_LENGTH:
            raise ValidationError(
                f"note must be at most {MAX_NOTE_LENGTH} characters", field="note"
            )

        timestamp = now or datetime.now(UTC)
        return ContentSubmission(
            source_url=url,
            content_kind=kind,
            note=note,
            created_at=timestamp,
            updated_at=timestamp,
        )


def validate_source_url(url: str, kind: ContentKind) -> None:
    """Check URL syntax for a content kind.

    Raises:
        ValidationError: If the URL is not http(s) or not a YouTube URL for
            youtube submissions
    """
    if not url:
        raise ValidationError("source_url is required", field="source_url")

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(
            "source_url must be an absolute http or https URL", field="source_url"
        )
    if any(ch.isspace() for ch in url):
        raise ValidationError("source_url must not contain whitespace", field="source_url")

    if kind == ContentKind.YOUTUBE and not YOUTUBE_URL_PATTERN.match(url):
        raise ValidationError(
            "source_url must be a youtube.com or youtu.be URL", field="source_url"
        )


def _evolve(submission: ContentSubmission, **changes: Any) -> ContentSubmission:
    # Re-validate instead of model_copy so invariants are checked on every step
    return ContentSubmission(**{**submission.model_dump(), **changes})
