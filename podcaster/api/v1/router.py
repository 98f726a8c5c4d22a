"""API v1 router module."""

from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette import status

from podcaster.core.events import ServiceContainer
from podcaster.feed.service import FeedRenderOptions, UnknownFeedError
from podcaster.services.submissions import SubmissionNotFoundError

router = APIRouter(default_response_class=JSONResponse)

RSS_MEDIA_TYPE = "application/rss+xml; charset=utf-8"


class SubmissionRequest(BaseModel):
    source_url: str = Field(description="Content to turn into an episode")
    content_kind: str = Field(default="url", description="url, youtube, pdf or document")
    note: str | None = None


class InvalidationRequest(BaseModel):
    reason: str = Field(default="manual invalidation", min_length=1, max_length=500)


def get_container(request: Request) -> ServiceContainer:
    """Resolve the process-wide container installed by ``create_app``."""
    container: ServiceContainer = request.app.state.container
    return container


def _etag_matches(if_none_match: str | None, etag: str) -> bool:
    if not if_none_match:
        return False
    candidates = [value.strip() for value in if_none_match.split(",")]
    return "*" in candidates or etag in candidates or f"W/{etag}" in candidates


# Submissions


@router.post("/submissions", status_code=status.HTTP_202_ACCEPTED)
async def create_submission(
    payload: SubmissionRequest,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, str]:
    """
    Accept a content reference for processing.

    Returns
    -------
        Submission and job identifiers with the initial submission status
    """
    receipt = await container.submissions.submit(
        payload.source_url, payload.content_kind, payload.note
    )
    return {
        "submission_id": receipt.submission_id,
        "job_id": receipt.job_id,
        "status": receipt.status,
    }


@router.get("/submissions/{submission_id}/status")
async def get_submission_status(
    submission_id: str,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Current status of the job processing a submission."""
    try:
        view = await container.submissions.get_job_status(submission_id)
    except SubmissionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return view.to_dict()


# Feeds


@router.get("/feeds/invalidations")
async def list_invalidations(
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Recent invalidation reports, newest last."""
    coordinator = container.coordinator
    return {
        "strategy": coordinator.strategy.value,
        "pending": coordinator.pending_count,
        "reports": [report.to_dict() for report in coordinator.history],
    }


@router.post("/feeds/invalidations/drain")
async def drain_invalidations(
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Apply batched invalidations now."""
    reports = await container.coordinator.drain()
    return {
        "drained_feeds": len(reports),
        "invalidated_key_count": sum(r.invalidated_key_count for r in reports),
        "reports": [report.to_dict() for report in reports],
    }


@router.get("/feeds/{feed_slug}/rss.xml")
async def get_feed(
    feed_slug: str,
    request: Request,
    include_chapters: bool = False,
    include_transcript: bool = False,
    max_episodes: int | None = Query(None, ge=1),
    sort_order: Literal["newest", "oldest"] = "newest",
    compression: bool = True,
    container: ServiceContainer = Depends(get_container),
) -> Response:
    """
    Rendered RSS feed.

    Served from cache while the cached copy is within its TTL and its ETag
    still matches the current episodes. Honors ``If-None-Match``.
    """
    options = FeedRenderOptions(
        include_chapters=include_chapters,
        include_transcript=include_transcript,
        max_episodes=max_episodes,
        sort_order=sort_order,
        compression=compression,
    )
    try:
        feed = await container.feeds.get_rendered_feed(feed_slug, options)
    except UnknownFeedError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    headers = {
        "ETag": feed.etag,
        "X-Cache": "HIT" if feed.from_cache else "MISS",
        "Cache-Control": f"public, max-age={container.settings.FEED_CACHE_TTL_SECONDS}",
        "Last-Modified": feed.last_modified.strftime("%a, %d %b %Y %H:%M:%S GMT"),
    }
    if _etag_matches(request.headers.get("If-None-Match"), feed.etag):
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)
    return Response(content=feed.content, media_type=RSS_MEDIA_TYPE, headers=headers)


@router.post("/feeds/{feed_slug}/invalidate")
async def invalidate_feed(
    feed_slug: str,
    payload: InvalidationRequest | None = Body(None),
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Drop every cached rendering of a feed and purge it from the CDN."""
    if not container.feeds.has_feed(feed_slug):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown feed: {feed_slug}"
        )
    reason = payload.reason if payload else "manual invalidation"
    report = await container.coordinator.invalidate(feed_slug, reason)
    return report.to_dict()


# Cache and health


@router.get("/cache/stats")
async def cache_stats(
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """Feed cache counters and health."""
    cache = container.cache
    return {
        "stats": cache.stats().to_dict(),
        "health": cache.health().to_dict(),
        "entries": len(cache),
        "size_bytes": cache.total_size_bytes,
        "max_size_bytes": cache.max_size_bytes,
    }


@router.get("/health")
async def health_check(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> dict[str, Any]:
    """
    Health check endpoint.

    Returns
    -------
        Dict containing health status information
    """
    return {
        **container.health(),
        "version": container.settings.version,
        "correlation_id": getattr(request.state, "correlation_id", None),
    }
