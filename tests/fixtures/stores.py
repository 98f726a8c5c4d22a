"""Collaborator fixtures: stores, episode source, CDN client, retry executor."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from podcaster.core.config import Settings
from podcaster.core.retry import RetryExecutor
from podcaster.feed.cache import FeedCache
from podcaster.models.episode import Episode
from podcaster.services.cdn import InMemoryCdnPurgeClient
from podcaster.services.stores import (
    InMemoryEpisodeSource,
    InMemoryJobStore,
    InMemorySubmissionStore,
)

from .clock import FakeClock, RecordingSleep

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def make_episode(index: int, feed_slug: str = "default", **overrides: object) -> Episode:
    """Build an episode published ``index`` hours after a fixed base time."""
    data: dict[str, object] = {
        "id": f"ep{index}",
        "title": f"Episode {index}",
        "description": f"Description {index}",
        "audio_url": f"https://cdn.example.com/audio/ep{index}.mp3",
        "duration_seconds": 300 + index,
        "published_at": BASE_TIME + timedelta(hours=index),
        "feed_slug": feed_slug,
    }
    data.update(overrides)
    return Episode(**data)  # type: ignore[arg-type]


@pytest.fixture
def test_settings() -> Settings:
    """Get settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        JSON_LOGS=False,
        FEED_TITLE="Test Feed",
        FEED_LINK="https://podcasts.example.com",
        FEED_CACHE_TTL_SECONDS=60,
        FEED_CACHE_SWEEP_INTERVAL_SECONDS=3600.0,
        INVALIDATION_STRATEGY="immediate",
        JOB_MAX_RETRIES=2,
    )


@pytest.fixture
def episode_factory() -> Callable[..., Episode]:
    return make_episode


@pytest.fixture
def submission_store() -> InMemorySubmissionStore:
    return InMemorySubmissionStore()


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def episode_source() -> InMemoryEpisodeSource:
    """Get an episode source seeded with three episodes."""
    return InMemoryEpisodeSource([make_episode(i) for i in range(1, 4)])


@pytest.fixture
def cdn_client() -> InMemoryCdnPurgeClient:
    return InMemoryCdnPurgeClient()


@pytest.fixture
def retry_executor(fake_sleep: RecordingSleep) -> RetryExecutor:
    """Get a retry executor whose backoff never actually waits."""
    return RetryExecutor(sleep=fake_sleep)


@pytest.fixture
def feed_cache(clock: FakeClock) -> FeedCache:
    """Get a feed cache driven by the fake clock."""
    return FeedCache(
        default_ttl_seconds=60,
        max_size_bytes=64 * 1024,
        key_prefix="rss:",
        sweep_interval_seconds=0.01,
        clock=clock,
    )
