"""Feed read path: episode lookup, ETag check, render on miss."""

import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from podcaster.core.config import Settings
from podcaster.core.logging import get_logger
from podcaster.core.metrics import FEED_RENDER_SECONDS
from podcaster.core.retry import RetryConfig, RetryExecutor
from podcaster.feed.cache import FeedCache, compute_etag
from podcaster.feed.renderer import ChannelInfo, compact, order_episodes, render_feed
from podcaster.models.episode import Episode
from podcaster.services.stores import EpisodeSource

logger = get_logger(__name__)


class UnknownFeedError(LookupError):
    """No episode source is registered for the requested feed."""

    def __init__(self, feed_slug: str) -> None:
        super().__init__(f"Unknown feed: {feed_slug}")
        self.feed_slug = feed_slug


class FeedRenderOptions(BaseModel):
    """Options that change the rendered bytes, and therefore the cache key."""

    model_config = ConfigDict(frozen=True)

    include_chapters: bool = False
    include_transcript: bool = False
    max_episodes: int | None = Field(default=None, gt=0)
    sort_order: Literal["newest", "oldest"] = "newest"
    compression: bool = True


@dataclass(frozen=True)
class RenderedFeed:
    feed_slug: str
    content: bytes
    etag: str
    from_cache: bool
    episode_count: int
    last_modified: datetime
    response_time_ms: float
    compressed: bool = False


class FeedService:
    """Serves rendered feeds through the :class:`FeedCache`.

    Every read lists the feed's episodes (cheap) to compute the fresh ETag;
    only a cache miss pays for rendering.
    """

    def __init__(
        self,
        cache: FeedCache,
        episodes: EpisodeSource,
        settings: Settings,
        retry_executor: RetryExecutor | None = None,
        feed_sources: Mapping[str, EpisodeSource] | None = None,
    ) -> None:
        """Initialize service.

        Args:
            cache: Shared feed cache
            episodes: Source for the default feed
            settings: Feed channel metadata and limits
            retry_executor: Executor for episode lookups
            feed_sources: Extra feeds by slug
        """
        self.cache = cache
        self.settings = settings
        self._retry = retry_executor or RetryExecutor()
        self._sources: dict[str, EpisodeSource] = {settings.DEFAULT_FEED_SLUG: episodes}
        if feed_sources:
            self._sources.update(feed_sources)

    @property
    def feed_slugs(self) -> list[str]:
        return list(self._sources)

    def has_feed(self, feed_slug: str) -> bool:
        return feed_slug in self._sources

    def register_feed(self, feed_slug: str, source: EpisodeSource) -> None:
        self._sources[feed_slug] = source

    def source_for(self, feed_slug: str) -> EpisodeSource:
        try:
            return self._sources[feed_slug]
        except KeyError:
            raise UnknownFeedError(feed_slug) from None

    def normalize(self, options: FeedRenderOptions | None) -> FeedRenderOptions:
        """Resolve the episode limit so equivalent requests share a cache key."""
        options = options or FeedRenderOptions()
        ceiling = self.settings.FEED_MAX_EPISODES
        limit = min(options.max_episodes or ceiling, ceiling)
        compression = options.compression and self.settings.FEED_COMPRESSION_ENABLED
        return options.model_copy(update={"max_episodes": limit, "compression": compression})

    async def get_rendered_feed(
        self,
        feed_slug: str | None = None,
        options: FeedRenderOptions | None = None,
        force_refresh: bool = False,
    ) -> RenderedFeed:
        """Return the feed, from cache when the cached copy is still valid.

        Args:
            feed_slug: Feed to render, the default feed when omitted
            options: Render options
            force_refresh: Skip the cache lookup and re-render

        Raises:
            UnknownFeedError: If the feed is not registered
            RetryExhaustedError: If the episode source keeps failing
        """
        started = time.perf_counter()
        slug = feed_slug or self.settings.DEFAULT_FEED_SLUG
        source = self.source_for(slug)
        opts = self.normalize(options)
        option_fields: dict[str, Any] = opts.model_dump(mode="json")

        episodes = await self._list_episodes(source, opts.max_episodes or 0)
        etag = compute_etag((ep.id for ep in episodes), option_fields)
        key = self.cache.key_for(slug, option_fields)

        entry = None if force_refresh else self.cache.get(key, etag)
        if entry is None:
            with FEED_RENDER_SECONDS.time():
                content, original_size = self._render(slug, episodes, opts)
            entry = self.cache.build_entry(
                key,
                content,
                etag,
                episode_count=len(episodes),
                compressed=opts.compression,
                original_size_bytes=original_size,
            )
            self.cache.put(key, entry)
            from_cache = False
        else:
            from_cache = True

        elapsed_ms = (time.perf_counter() - started) * 1000
        self.cache.record_response_time(elapsed_ms)
        logger.debug(
            "feed_served",
            feed=slug,
            key=key,
            from_cache=from_cache,
            episodes=entry.episode_count,
            response_time_ms=round(elapsed_ms, 2),
        )
        return RenderedFeed(
            feed_slug=slug,
            content=entry.content,
            etag=entry.etag,
            from_cache=from_cache,
            episode_count=entry.episode_count,
            last_modified=entry.last_modified,
            response_time_ms=elapsed_ms,
            compressed=entry.compressed,
        )

    async def _list_episodes(self, source: EpisodeSource, limit: int) -> list[Episode]:
        return await self._retry.execute(
            lambda: source.list_episodes(limit, 0),
            RetryConfig.for_service("database"),
            name="episode_source.list_episodes",
        )

    def _render(
        self, slug: str, episodes: list[Episode], opts: FeedRenderOptions
    ) -> tuple[bytes, int | None]:
        channel = ChannelInfo(
            title=self.settings.FEED_TITLE,
            description=self.settings.FEED_DESCRIPTION,
            link=self.settings.FEED_LINK,
            language=self.settings.FEED_LANGUAGE,
            self_url=f"{self.settings.FEED_LINK.rstrip('/')}/feeds/{slug}/rss.xml",
        )
        content = render_feed(
            channel,
            order_episodes(episodes, opts.sort_order),
            include_chapters=opts.include_chapters,
            include_transcript=opts.include_transcript,
        )
        if not opts.compression:
            return content, None
        return compact(content), len(content)
