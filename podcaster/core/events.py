"""Process-wide service wiring, startup and shutdown."""

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from podcaster.core.config import Settings
from podcaster.core.logging import configure_logging, get_logger
from podcaster.core.retry import RetryExecutor
from podcaster.feed.cache import FeedCache
from podcaster.feed.invalidation import EpisodeChangedEvent, InvalidationCoordinator
from podcaster.feed.service import FeedService
from podcaster.models.episode import Episode
from podcaster.services.cdn import CdnPurgeClient, HttpCdnPurgeClient, InMemoryCdnPurgeClient
from podcaster.services.job_runner import JobRunner, Processor
from podcaster.services.stores import (
    EpisodeSource,
    InMemoryEpisodeSource,
    InMemoryJobStore,
    InMemorySubmissionStore,
    JobStore,
    SubmissionStore,
)
from podcaster.services.submissions import SubmissionService

logger = get_logger(__name__)


class ServiceContainer:
    """Every long-lived component of one process.

    Built once at startup, started and stopped by the application lifespan.
    Collaborators not passed in get in-memory implementations.
    """

    def __init__(
        self,
        settings: Settings,
        submission_store: SubmissionStore,
        job_store: JobStore,
        episodes: EpisodeSource,
        cache: FeedCache,
        cdn_client: CdnPurgeClient,
        retry_executor: RetryExecutor,
        coordinator: InvalidationCoordinator,
        feeds: FeedService,
        submissions: SubmissionService,
        runner: JobRunner | None = None,
    ) -> None:
        self.settings = settings
        self.submission_store = submission_store
        self.job_store = job_store
        self.episodes = episodes
        self.cache = cache
        self.cdn_client = cdn_client
        self.retry_executor = retry_executor
        self.coordinator = coordinator
        self.feeds = feeds
        self.submissions = submissions
        self.runner = runner
        self.started = False

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        submission_store: SubmissionStore | None = None,
        job_store: JobStore | None = None,
        episodes: EpisodeSource | None = None,
        cdn_client: CdnPurgeClient | None = None,
        processor: Processor | None = None,
        retry_executor: RetryExecutor | None = None,
        feed_sources: Mapping[str, EpisodeSource] | None = None,
        cache: FeedCache | None = None,
    ) -> "ServiceContainer":
        """Wire the components from settings.

        Args:
            settings: Application settings
            submission_store: Submission persistence
            job_store: Job persistence
            episodes: Episodes of the default feed
            cdn_client: CDN purge collaborator, HTTP when ``CDN_ENABLED``
            processor: Job work; without one jobs stay queued for a worker
            retry_executor: Shared retry executor
            feed_sources: Extra feeds by slug
            cache: Feed cache, built from settings by default

        Returns:
            Container, not yet started
        """
        submission_store = submission_store or InMemorySubmissionStore()
        job_store = job_store or InMemoryJobStore()
        episodes = episodes or InMemoryEpisodeSource()
        retry_executor = retry_executor or RetryExecutor()

        if cdn_client is None:
            if settings.CDN_ENABLED and settings.CDN_PURGE_URL:
                cdn_client = HttpCdnPurgeClient(
                    settings.CDN_PURGE_URL,
                    api_key=settings.CDN_API_KEY,
                    timeout=settings.CDN_TIMEOUT,
                )
            else:
                cdn_client = InMemoryCdnPurgeClient()

        cache = cache or FeedCache(
            default_ttl_seconds=settings.FEED_CACHE_TTL_SECONDS,
            max_size_bytes=settings.FEED_CACHE_MAX_SIZE_BYTES,
            key_prefix=settings.FEED_CACHE_KEY_PREFIX,
            sweep_interval_seconds=settings.FEED_CACHE_SWEEP_INTERVAL_SECONDS,
        )
        coordinator = InvalidationCoordinator(
            cache,
            cdn_client,
            strategy=settings.INVALIDATION_STRATEGY,
            retry_executor=retry_executor,
            drain_interval_seconds=settings.INVALIDATION_DRAIN_INTERVAL_SECONDS,
        )
        feeds = FeedService(
            cache,
            episodes,
            settings,
            retry_executor=retry_executor,
            feed_sources=feed_sources,
        )

        runner = None
        if processor is not None:
            publish = getattr(episodes, "publish", None)
            runner = JobRunner(
                job_store,
                submission_store,
                processor,
                retry_executor=retry_executor,
                event_sink=coordinator.handle,
                publish_episode=publish,
                feed_slug=settings.DEFAULT_FEED_SLUG,
            )

        submissions = SubmissionService(
            submission_store,
            job_store,
            runner=runner,
            max_retries=settings.JOB_MAX_RETRIES,
        )
        return cls(
            settings=settings,
            submission_store=submission_store,
            job_store=job_store,
            episodes=episodes,
            cache=cache,
            cdn_client=cdn_client,
            retry_executor=retry_executor,
            coordinator=coordinator,
            feeds=feeds,
            submissions=submissions,
            runner=runner,
        )

    async def start(self) -> None:
        """Start background tasks. Safe to call twice."""
        if self.started:
            return
        self.cache.start()
        self.coordinator.start()
        self.started = True
        logger.info(
            "services_started",
            invalidation_strategy=self.coordinator.strategy.value,
            cdn=type(self.cdn_client).__name__,
            job_runner=self.runner is not None,
        )

    async def shutdown(self) -> None:
        """Stop background work in dependency order.

        Running jobs are cancelled first so they emit no more events, then the
        coordinator flushes its batch, then the sweep stops.
        """
        if not self.started:
            return
        await self.submissions.shutdown()
        await self.coordinator.stop()
        await self.cache.stop()
        if isinstance(self.cdn_client, HttpCdnPurgeClient):
            await self.cdn_client.close()
        self.started = False
        logger.info("services_stopped")

    async def publish_episode(self, episode: Episode) -> None:
        """Publish an episode and invalidate its feed."""
        publish = getattr(self.episodes, "publish", None)
        if publish is None:
            raise TypeError(f"{type(self.episodes).__name__} does not support publishing")
        await publish(episode)
        await self.coordinator.handle(
            EpisodeChangedEvent(
                episode_id=episode.id, change_type="created", feed_slug=episode.feed_slug
            )
        )

    def health(self) -> dict[str, Any]:
        """Component health, ``degraded`` when the cache reports issues."""
        cache_health = self.cache.health()
        components = {
            "feed_cache": cache_health.healthy,
            "cache_sweeper": self.cache.running,
            "invalidation": self.coordinator.strategy.value,
            "job_runner": self.runner is not None,
        }
        status = "healthy" if cache_health.healthy else "degraded"
        if self.started and not self.cache.running:
            status = "degraded"
        return {
            "status": status,
            "components": components,
            "details": {
                "feed_cache": cache_health.to_dict(),
                "pending_invalidations": self.coordinator.pending_count,
            },
        }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the container on ``app.state`` and tear it down on exit."""
    container: ServiceContainer = app.state.container
    settings = container.settings
    configure_logging(
        level=settings.LOG_LEVEL,
        json_logs=settings.JSON_LOGS,
        version=settings.version,
    )
    await container.start()
    logger.info("application_startup_complete", app=container.settings.app_name)
    try:
        yield
    finally:
        await container.shutdown()
        logger.info("application_shutdown_complete")
