"""In-memory cache of rendered feeds.

Entries are addressed by a key derived from the feed identity and the render
options, and are trusted only while both hold:

* the entry is younger than its TTL, and
* its stored ETag equals the ETag the caller computed from the current episode
  ids and render options.

The ETag axis heals itself on the next read; only the TTL axis needs the
background sweep and explicit invalidation.

All mutation happens inside synchronous methods. Under asyncio this makes
every read-modify-write of the entry map and the stats atomic with respect to
other request tasks and the sweep task.
"""

import asyncio
import contextlib
import hashlib
import json
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from podcaster.core.errors import CacheDegradedError
from podcaster.core.logging import get_logger
from podcaster.core.metrics import (
    FEED_CACHE_BYTES,
    FEED_CACHE_DEGRADED,
    FEED_CACHE_ENTRIES,
    FEED_CACHE_EVICTIONS,
    FEED_CACHE_REJECTED,
    FEED_CACHE_REQUESTS,
)

logger = get_logger(__name__)

Clock = Callable[[], float]

DEFAULT_KEY_PREFIX = "rss:"
DEFAULT_TTL_SECONDS = 3600
DEFAULT_MAX_SIZE_BYTES = 10 * 1024 * 1024
DEFAULT_SWEEP_INTERVAL_SECONDS = 300.0

# Health thresholds
MEMORY_USAGE_ALERT_PERCENT = 90.0
HIT_RATE_ALERT = 0.5
HIT_RATE_MIN_REQUESTS = 10
RESPONSE_TIME_ALERT_MS = 1000.0


def _canonical_options(options: Mapping[str, Any]) -> str:
    return json.dumps(dict(options), sort_keys=True, separators=(",", ":"), default=str)


def cache_key(
    feed_slug: str, options: Mapping[str, Any], prefix: str = DEFAULT_KEY_PREFIX
) -> str:
    """Stable key for a feed rendered with a given option set.

    Option order never matters; any differing value yields a different key.
    """
    digest = hashlib.sha256(_canonical_options(options).encode()).hexdigest()[:16]
    return f"{feed_prefix(feed_slug, prefix)}{digest}"


def feed_prefix(feed_slug: str, prefix: str = DEFAULT_KEY_PREFIX) -> str:
    """Key prefix covering every cached rendering of one feed."""
    return f"{prefix}{feed_slug}:"


def compute_etag(episode_ids: Iterable[str], options: Mapping[str, Any]) -> str:
    """Fingerprint of the inputs that determine a feed rendering.

    A 64-bit blake2b digest over the sorted episode ids and the canonical
    render options, quoted as an HTTP entity tag.
    """
    hasher = hashlib.blake2b(digest_size=8)
    hasher.update("\n".join(sorted(episode_ids)).encode())
    hasher.update(b"\x00")
    hasher.update(_canonical_options(options).encode())
    return f'"{hasher.hexdigest()}"'


@dataclass(frozen=True)
class FeedCacheEntry:
    """One cached feed rendering."""

    key: str
    content: bytes
    etag: str
    created_at: float
    ttl_seconds: float
    episode_count: int = 0
    compressed: bool = False
    original_size_bytes: int | None = None
    last_modified: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    def age(self, now: float) -> float:
        return now - self.created_at

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl_seconds


@dataclass
class CacheStats:
    """Process-wide counters, reset by :meth:`FeedCache.clear`."""

    total_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    hit_rate: float = 0.0
    average_response_time_ms: float = 0.0
    total_bytes_served: int = 0
    compression_ratio: float = 0.0
    invalidation_count: int = 0
    last_invalidation: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "hit_rate": round(self.hit_rate, 4),
            "average_response_time_ms": round(self.average_response_time_ms, 3),
            "total_bytes_served": self.total_bytes_served,
            "compression_ratio": round(self.compression_ratio, 4),
            "invalidation_count": self.invalidation_count,
            "last_invalidation": (
                self.last_invalidation.isoformat() if self.last_invalidation else None
            ),
        }


@dataclass(frozen=True)
class CacheHealth:
    healthy: bool
    issues: list[str]
    recommendations: list[str]
    memory_usage_percent: float
    entry_count: int
    suspect_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
            "memory_usage_percent": round(self.memory_usage_percent, 2),
            "entry_count": self.entry_count,
            "suspect_count": self.suspect_count,
        }


class FeedCache:
    """TTL- and ETag-checked cache of rendered feeds."""

    def __init__(
        self,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        """Initialize cache.

        Args:
            default_ttl_seconds: TTL given to entries built by :meth:`build_entry`
            max_size_bytes: Budget for all entries; larger single entries are skipped
            key_prefix: Namespace for keys built by :meth:`key_for`
            sweep_interval_seconds: Period of the background expiry sweep
            clock: Returns the current time in seconds
        """
        self.default_ttl_seconds = default_ttl_seconds
        self.max_size_bytes = max_size_bytes
        self.key_prefix = key_prefix
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: dict[str, FeedCacheEntry] = {}
        self._suspect: set[str] = set()
        self._stats = CacheStats()
        self._response_samples = 0
        self._sweep_task: asyncio.Task[None] | None = None

    # Key helpers

    def key_for(self, feed_slug: str, options: Mapping[str, Any]) -> str:
        return cache_key(feed_slug, options, self.key_prefix)

    def prefix_for(self, feed_slug: str) -> str:
        return feed_prefix(feed_slug, self.key_prefix)

    def build_entry(
        self,
        key: str,
        content: bytes,
        etag: str,
        episode_count: int = 0,
        compressed: bool = False,
        original_size_bytes: int | None = None,
        ttl_seconds: float | None = None,
    ) -> FeedCacheEntry:
        return FeedCacheEntry(
            key=key,
            content=content,
            etag=etag,
            created_at=self._clock(),
            ttl_seconds=ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds,
            episode_count=episode_count,
            compressed=compressed,
            original_size_bytes=original_size_bytes,
        )

    # Read path

    def get(self, key: str, fresh_etag: str) -> FeedCacheEntry | None:
        """Return the entry for ``key`` if it is still trustworthy.

        Expired entries and entries whose ETag differs from ``fresh_etag`` are
        evicted and reported as a miss. A suspect entry whose ETag still
        matches is cleared of suspicion and served.
        """
        try:
            entry = self._lookup(key, fresh_etag)
        except Exception as e:
            self._degraded("get", e)
            entry = None

        self._stats.total_requests += 1
        if entry is None:
            self._stats.cache_misses += 1
            FEED_CACHE_REQUESTS.labels(result="miss").inc()
        else:
            self._stats.cache_hits += 1
            FEED_CACHE_REQUESTS.labels(result="hit").inc()
        self._stats.hit_rate = self._stats.cache_hits / self._stats.total_requests
        return entry

    def _lookup(self, key: str, fresh_etag: str) -> FeedCacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None

        now = self._clock()
        if entry.is_expired(now):
            self._evict(key, "ttl")
            logger.debug("feed_cache_expired", key=key, age=entry.age(now))
            return None

        if entry.etag != fresh_etag:
            self._evict(key, "etag")
            logger.debug(
                "feed_cache_etag_mismatch",
                key=key,
                cached_etag=entry.etag,
                fresh_etag=fresh_etag,
            )
            return None

        if key in self._suspect:
            self._suspect.discard(key)
            logger.debug("feed_cache_suspect_cleared", key=key)
        return entry

    def peek(self, key: str) -> FeedCacheEntry | None:
        """Return an entry without validation or stats accounting."""
        return self._entries.get(key)

    def is_suspect(self, key: str) -> bool:
        return key in self._suspect

    def record_response_time(self, response_time_ms: float) -> None:
        """Fold one request's response time into the running average."""
        self._response_samples += 1
        n = self._response_samples
        avg = self._stats.average_response_time_ms
        self._stats.average_response_time_ms = avg + (response_time_ms - avg) / n

    # Write path

    def put(self, key: str, entry: FeedCacheEntry) -> bool:
        """Store an entry.

        Entries larger than the whole budget are logged and skipped; the caller
        just regenerates next time. Older entries are evicted to make room.

        Returns:
            True if the entry was stored
        """
        try:
            return self._store(key, entry)
        except Exception as e:
            self._degraded("put", e)
            return False

    def _store(self, key: str, entry: FeedCacheEntry) -> bool:
        if entry.key != key:
            entry = replace(entry, key=key)

        if entry.size_bytes > self.max_size_bytes:
            FEED_CACHE_REJECTED.inc()
            logger.warning(
                "feed_cache_entry_too_large",
                key=key,
                size=entry.size_bytes,
                max_size=self.max_size_bytes,
            )
            return False

        previous = self._entries.pop(key, None)
        if previous is not None:
            self._suspect.discard(key)

        used = self.total_size_bytes
        if used + entry.size_bytes > self.max_size_bytes:
            # Oldest first; dicts keep insertion order
            for old_key in sorted(self._entries, key=lambda k: self._entries[k].created_at):
                if used + entry.size_bytes <= self.max_size_bytes:
                    break
                used -= self._entries[old_key].size_bytes
                self._evict(old_key, "capacity")

        self._entries[key] = entry
        self._stats.total_bytes_served += entry.size_bytes
        self._update_compression_ratio()
        self._update_gauges()
        return True

    # Invalidation

    def invalidate(self, key_prefix: str) -> list[str]:
        """Remove every entry whose key starts with ``key_prefix``.

        Returns:
            Keys removed
        """
        try:
            removed = [key for key in self._entries if key.startswith(key_prefix)]
            for key in removed:
                self._evict(key, "invalidated")
        except Exception as e:
            self._degraded("invalidate", e)
            return []

        self._stats.invalidation_count += 1
        self._stats.last_invalidation = datetime.now(UTC)
        logger.info("feed_cache_invalidated", prefix=key_prefix, keys=len(removed))
        return removed

    def mark_suspect(self, key_prefix: str) -> list[str]:
        """Flag entries for verification on their next read without removing them.

        Returns:
            Keys marked
        """
        marked = [key for key in self._entries if key.startswith(key_prefix)]
        self._suspect.update(marked)
        logger.debug("feed_cache_marked_suspect", prefix=key_prefix, keys=len(marked))
        return marked

    def clear(self) -> None:
        """Drop all entries and reset stats."""
        self._entries.clear()
        self._suspect.clear()
        self._stats = CacheStats()
        self._response_samples = 0
        self._update_gauges()
        logger.info("feed_cache_cleared")

    # Expiry sweep

    def sweep_expired(self) -> int:
        """Remove every expired entry.

        Returns:
            Number of entries removed
        """
        try:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                self._evict(key, "sweep")
        except Exception as e:
            self._degraded("sweep", e)
            return 0

        if expired:
            logger.debug("feed_cache_swept", count=len(expired))
        return len(expired)

    def start(self) -> None:
        """Start the background sweep task on the running loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.get_running_loop().create_task(
            self._sweep_loop(), name="feed-cache-sweep"
        )
        logger.info("feed_cache_sweeper_started", interval=self.sweep_interval_seconds)

    async def stop(self) -> None:
        """Cancel the sweep task and wait for it to finish."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("feed_cache_sweeper_stopped")

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep_expired()

    # Introspection

    def stats(self) -> CacheStats:
        return replace(self._stats)

    def health(self) -> CacheHealth:
        issues: list[str] = []
        recommendations: list[str] = []

        memory_usage = self.total_size_bytes / self.max_size_bytes * 100
        if memory_usage > MEMORY_USAGE_ALERT_PERCENT:
            issues.append("Cache memory usage is very high")
            recommendations.append("Consider reducing cache duration or raising the size budget")

        stats = self._stats
        if stats.total_requests >= HIT_RATE_MIN_REQUESTS and stats.hit_rate < HIT_RATE_ALERT:
            issues.append("Cache hit rate is low")
            recommendations.append("Review cache key generation and TTL settings")

        if stats.average_response_time_ms > RESPONSE_TIME_ALERT_MS:
            issues.append("Average response time is high")
            recommendations.append("Consider enabling compression or optimizing feed rendering")

        now = self._clock()
        stale = sum(1 for entry in self._entries.values() if entry.is_expired(now))
        if stale:
            issues.append(f"{stale} stale cache entries found")
            recommendations.append("Run cache cleanup more frequently")

        return CacheHealth(
            healthy=not issues,
            issues=issues,
            recommendations=recommendations,
            memory_usage_percent=memory_usage,
            entry_count=len(self._entries),
            suspect_count=len(self._suspect),
        )

    @property
    def total_size_bytes(self) -> int:
        return sum(entry.size_bytes for entry in self._entries.values())

    def keys(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # Internals

    def _evict(self, key: str, reason: str) -> None:
        if self._entries.pop(key, None) is not None:
            FEED_CACHE_EVICTIONS.labels(reason=reason).inc()
        self._suspect.discard(key)
        self._update_gauges()

    def _update_compression_ratio(self) -> None:
        compressed = [
            e for e in self._entries.values() if e.compressed and e.original_size_bytes
        ]
        if compressed:
            original = sum(e.original_size_bytes or 0 for e in compressed)
            self._stats.compression_ratio = sum(e.size_bytes for e in compressed) / original

    def _update_gauges(self) -> None:
        FEED_CACHE_ENTRIES.set(len(self._entries))
        FEED_CACHE_BYTES.set(self.total_size_bytes)

    def _degraded(self, operation: str, cause: Exception) -> None:
        error = CacheDegradedError(operation, cause)
        FEED_CACHE_DEGRADED.labels(operation=operation).inc()
        logger.error("feed_cache_degraded", **error.to_dict())
