"""Keeps the feed cache and the CDN edge coherent with job and episode changes.

Three strategies decide when an upstream change is applied:

* ``immediate``: drop every cached rendering of the feed, then ask the CDN to
  purge the feed's public paths.
* ``scheduled``: remember the reason; :meth:`InvalidationCoordinator.drain`
  applies one coalesced immediate invalidation per feed.
* ``lazy``: flag the feed's entries as suspect and let the next read's ETag
  check decide whether they are still good.

Manual invalidation is always immediate.
"""

import asyncio
import contextlib
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from podcaster.core.logging import get_logger
from podcaster.core.metrics import (
    CDN_PURGES,
    INVALIDATED_KEYS,
    INVALIDATIONS,
    PENDING_INVALIDATIONS,
)
from podcaster.core.retry import RetryConfig, RetryExecutor
from podcaster.feed.cache import FeedCache
from podcaster.models.job import JobStatus
from podcaster.services.cdn import CdnPurgeClient, CdnPurgeRequest, CdnPurgeResult

logger = get_logger(__name__)

DEFAULT_HISTORY_SIZE = 100


class InvalidationStrategy(str, Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"
    LAZY = "lazy"


class JobTerminalEvent(BaseModel):
    """A processing job reached ``completed`` or ``failed``."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    submission_id: str
    status: JobStatus
    feed_slug: str = "default"
    error_message: str | None = None

    @property
    def source(self) -> str:
        return "job_terminal"

    @property
    def reason(self) -> str:
        return f"job {self.job_id} {self.status.value}"


class EpisodeChangedEvent(BaseModel):
    """An episode was published, edited or removed."""

    model_config = ConfigDict(frozen=True)

    episode_id: str
    change_type: Literal["created", "updated", "deleted"]
    feed_slug: str = "default"

    @property
    def source(self) -> str:
        return "episode_changed"

    @property
    def reason(self) -> str:
        return f"episode {self.episode_id} {self.change_type}"


InvalidationEvent = JobTerminalEvent | EpisodeChangedEvent


@dataclass(frozen=True)
class InvalidationReport:
    """What one invalidation did, kept for observability."""

    feed_slug: str
    strategy: InvalidationStrategy
    reason: str
    source_event: str
    invalidated_keys: tuple[str, ...] = ()
    suspect_keys: tuple[str, ...] = ()
    deferred: bool = False
    cdn_purge: CdnPurgeResult | None = None
    cdn_error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def invalidated_key_count(self) -> int:
        return len(self.invalidated_keys)

    def to_dict(self) -> dict[str, Any]:
        return {
            "feed_slug": self.feed_slug,
            "strategy": self.strategy.value,
            "reason": self.reason,
            "source_event": self.source_event,
            "invalidated_key_count": self.invalidated_key_count,
            "invalidated_keys": list(self.invalidated_keys),
            "suspect_keys": list(self.suspect_keys),
            "deferred": self.deferred,
            "cdn_purge": self.cdn_purge.model_dump(mode="json") if self.cdn_purge else None,
            "cdn_error": self.cdn_error,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class _PendingBatch:
    reasons: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)


def feed_paths(feed_slug: str) -> list[str]:
    """Public CDN paths serving one feed."""
    return [f"/feeds/{feed_slug}/rss.xml", f"/feeds/{feed_slug}/episodes"]


class InvalidationCoordinator:
    """Applies cache and CDN invalidation for feed-affecting events."""

    def __init__(
        self,
        cache: FeedCache,
        cdn_client: CdnPurgeClient,
        strategy: InvalidationStrategy | str = InvalidationStrategy.IMMEDIATE,
        retry_executor: RetryExecutor | None = None,
        drain_interval_seconds: float = 60.0,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        """Initialize coordinator.

        Args:
            cache: Feed cache to invalidate
            cdn_client: CDN purge collaborator
            strategy: Strategy applied to events
            retry_executor: Executor for CDN purge calls
            drain_interval_seconds: Period of the scheduled drain task
            history_size: Number of reports kept
        """
        self.cache = cache
        self.cdn_client = cdn_client
        self.strategy = InvalidationStrategy(strategy)
        self.drain_interval_seconds = drain_interval_seconds
        self._retry = retry_executor or RetryExecutor()
        self._pending: dict[str, _PendingBatch] = {}
        self._history: deque[InvalidationReport] = deque(maxlen=history_size)
        self._drain_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def handle(self, event: InvalidationEvent) -> InvalidationReport:
        """Apply the configured strategy to one event."""
        feed = event.feed_slug
        INVALIDATIONS.labels(strategy=self.strategy.value, source=event.source).inc()

        if self.strategy == InvalidationStrategy.IMMEDIATE:
            return await self._invalidate_now(
                feed, event.reason, event.source, InvalidationStrategy.IMMEDIATE
            )

        if self.strategy == InvalidationStrategy.SCHEDULED:
            return self._enqueue(feed, event.reason, event.source)

        marked = self.cache.mark_suspect(self.cache.prefix_for(feed))
        INVALIDATED_KEYS.labels(strategy=self.strategy.value).inc(len(marked))
        report = InvalidationReport(
            feed_slug=feed,
            strategy=InvalidationStrategy.LAZY,
            reason=event.reason,
            source_event=event.source,
            suspect_keys=tuple(marked),
        )
        self._record(report)
        return report

    async def invalidate(
        self, feed_slug: str, reason: str, source_event: str = "manual"
    ) -> InvalidationReport:
        """Invalidate one feed now, whatever the configured strategy."""
        INVALIDATIONS.labels(
            strategy=InvalidationStrategy.IMMEDIATE.value, source=source_event
        ).inc()
        return await self._invalidate_now(
            feed_slug, reason, source_event, InvalidationStrategy.IMMEDIATE
        )

    async def drain(self) -> list[InvalidationReport]:
        """Apply every pending batch, one invalidation per feed.

        Returns:
            One report per drained feed
        """
        reports = []
        while self._pending:
            feed = next(iter(self._pending))
            pending = self._pending.pop(feed)
            PENDING_INVALIDATIONS.set(self.pending_count)
            reason = "; ".join(pending.reasons)
            source = ",".join(sorted(set(pending.sources)))
            try:
                report = await self._invalidate_now(
                    feed, reason, source, InvalidationStrategy.SCHEDULED
                )
            except asyncio.CancelledError:
                self._requeue(feed, pending)
                raise
            reports.append(report)
        if reports:
            logger.info("invalidation_batch_drained", feeds=len(reports))
        return reports

    @property
    def pending_count(self) -> int:
        return sum(len(batch.reasons) for batch in self._pending.values())

    @property
    def pending_feeds(self) -> list[str]:
        return list(self._pending)

    @property
    def history(self) -> list[InvalidationReport]:
        return list(self._history)

    # Lifecycle

    def start(self) -> None:
        """Start the periodic drain task when the strategy is scheduled."""
        if self.strategy != InvalidationStrategy.SCHEDULED:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._stopping.clear()
        self._drain_task = asyncio.get_running_loop().create_task(
            self._drain_loop(), name="invalidation-drain"
        )
        logger.info("invalidation_drain_started", interval=self.drain_interval_seconds)

    async def stop(self) -> None:
        """Let the drain task finish its current batch, then flush what is left."""
        task, self._drain_task = self._drain_task, None
        if task is not None:
            self._stopping.set()
            await task
        if self._pending:
            await self.drain()
        logger.info("invalidation_coordinator_stopped")

    @property
    def running(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    async def _drain_loop(self) -> None:
        while not self._stopping.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self.drain_interval_seconds
                )
            if self._pending:
                await self.drain()

    # Internals

    def _enqueue(self, feed: str, reason: str, source: str) -> InvalidationReport:
        pending = self._pending.setdefault(feed, _PendingBatch())
        pending.reasons.append(reason)
        pending.sources.append(source)
        PENDING_INVALIDATIONS.set(self.pending_count)
        logger.debug("invalidation_deferred", feed=feed, reason=reason, pending=self.pending_count)
        report = InvalidationReport(
            feed_slug=feed,
            strategy=InvalidationStrategy.SCHEDULED,
            reason=reason,
            source_event=source,
            deferred=True,
        )
        self._record(report)
        return report

    def _requeue(self, feed: str, pending: _PendingBatch) -> None:
        # Reasons queued while this batch was in flight stay behind it
        newer = self._pending.pop(feed, None)
        if newer is not None:
            pending.reasons.extend(newer.reasons)
            pending.sources.extend(newer.sources)
        self._pending[feed] = pending
        PENDING_INVALIDATIONS.set(self.pending_count)

    async def _invalidate_now(
        self,
        feed: str,
        reason: str,
        source: str,
        strategy: InvalidationStrategy,
    ) -> InvalidationReport:
        removed = self.cache.invalidate(self.cache.prefix_for(feed))
        INVALIDATED_KEYS.labels(strategy=strategy.value).inc(len(removed))

        purge: CdnPurgeResult | None = None
        cdn_error: str | None = None
        request = CdnPurgeRequest(
            content_paths=feed_paths(feed), reason=f"RSS feed invalidation: {reason}"
        )
        try:
            purge = await self._retry.execute(
                lambda: self.cdn_client.purge(request),
                RetryConfig.for_service("cdn"),
                name="cdn.purge",
            )
            CDN_PURGES.labels(outcome="success").inc()
        except Exception as e:
            # Local entries are already gone; a failed purge only leaves the edge stale
            CDN_PURGES.labels(outcome="failure").inc()
            cdn_error = str(e)
            logger.error("cdn_purge_failed", feed=feed, reason=reason, error=cdn_error)

        report = InvalidationReport(
            feed_slug=feed,
            strategy=strategy,
            reason=reason,
            source_event=source,
            invalidated_keys=tuple(removed),
            cdn_purge=purge,
            cdn_error=cdn_error,
        )
        self._record(report)
        logger.info(
            "feed_invalidated",
            feed=feed,
            strategy=strategy.value,
            reason=reason,
            source=source,
            keys=len(removed),
            cdn_purged=purge is not None,
        )
        return report

    def _record(self, report: InvalidationReport) -> None:
        self._history.append(report)
