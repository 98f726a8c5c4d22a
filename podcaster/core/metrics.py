"""Prometheus metrics for the pipeline, the feed cache and the HTTP layer."""

from prometheus_client import Counter, Gauge, Histogram

# HTTP metrics
REQUESTS_TOTAL = Counter(
    "podcaster_http_requests_total",
    "Total number of HTTP requests",
    labelnames=["method", "path"],
)

RESPONSES_TOTAL = Counter(
    "podcaster_http_responses_total",
    "Total number of HTTP responses",
    labelnames=["status_code"],
)

REQUEST_DURATION = Histogram(
    "podcaster_http_request_duration_seconds",
    "HTTP request latency by route template",
    ["method", "route"],
)

FEED_RESPONSES = Counter(
    "podcaster_feed_responses_total",
    "Feed responses by cache outcome",
    ["outcome"],  # hit, miss, not_modified
)

# Feed cache metrics
FEED_CACHE_REQUESTS = Counter(
    "podcaster_feed_cache_requests_total",
    "Feed cache lookups",
    ["result"],  # hit, miss
)

FEED_CACHE_EVICTIONS = Counter(
    "podcaster_feed_cache_evictions_total",
    "Feed cache entries removed",
    ["reason"],  # ttl, etag, invalidated, capacity, sweep
)

FEED_CACHE_REJECTED = Counter(
    "podcaster_feed_cache_rejected_total",
    "Feed cache writes skipped because the entry exceeded the size budget",
)

FEED_CACHE_DEGRADED = Counter(
    "podcaster_feed_cache_degraded_total",
    "Feed cache operations that failed and fell back to regeneration",
    ["operation"],
)

FEED_CACHE_ENTRIES = Gauge(
    "podcaster_feed_cache_entries",
    "Current number of cached feed renderings",
)

FEED_CACHE_BYTES = Gauge(
    "podcaster_feed_cache_bytes",
    "Bytes held by cached feed renderings",
)

FEED_RENDER_SECONDS = Histogram(
    "podcaster_feed_render_seconds",
    "Time spent rendering a feed on cache miss",
)

# Invalidation metrics
INVALIDATIONS = Counter(
    "podcaster_invalidations_total",
    "Invalidation operations by strategy",
    ["strategy", "source"],
)

INVALIDATED_KEYS = Counter(
    "podcaster_invalidated_keys_total",
    "Cache keys removed or marked suspect by invalidation",
    ["strategy"],
)

CDN_PURGES = Counter(
    "podcaster_cdn_purges_total",
    "CDN purge requests by outcome",
    ["outcome"],  # success, failure
)

PENDING_INVALIDATIONS = Gauge(
    "podcaster_pending_invalidations",
    "Invalidation reasons waiting for the next scheduled drain",
)

# Job metrics
JOB_TRANSITIONS = Counter(
    "podcaster_job_transitions_total",
    "Processing job state transitions",
    ["from_status", "to_status"],
)

JOB_RETRIES = Counter(
    "podcaster_job_retries_total",
    "Processing jobs re-queued after a failure",
)

RETRY_ATTEMPTS = Counter(
    "podcaster_retry_attempts_total",
    "Retry executor attempt outcomes",
    ["outcome"],  # success, retry, exhausted, aborted
)
