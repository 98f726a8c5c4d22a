"""Podcast episode model."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# Estimate used when storage did not report a size: 128kbps MP3
BYTES_PER_SECOND_ESTIMATE = 16 * 1024


class Episode(BaseModel):
    """A finished episode, as rendered into the feed."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""
    audio_url: str
    duration_seconds: int = Field(default=0, ge=0)
    published_at: datetime
    submission_id: str | None = None
    feed_slug: str = "default"
    author: str | None = None
    chapters_url: str | None = None
    transcript_url: str | None = None
    audio_size_bytes: int | None = Field(default=None, ge=0)
    audio_mime_type: str = "audio/mpeg"

    @property
    def guid(self) -> str:
        return f"episode_{self.id}"

    @property
    def formatted_duration(self) -> str:
        minutes, seconds = divmod(self.duration_seconds, 60)
        return f"{minutes}:{seconds:02d}"

    @property
    def enclosure_length(self) -> int:
        if self.audio_size_bytes is not None:
            return self.audio_size_bytes
        return self.duration_seconds * BYTES_PER_SECOND_ESTIMATE
