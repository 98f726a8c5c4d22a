"""Request metrics middleware tests."""

import pytest
from fastapi import Response
from httpx import AsyncClient

from podcaster.middleware.metrics import feed_outcome

FEED = "/api/v1/feeds/default/rss.xml"


@pytest.mark.parametrize(
    ("status_code", "headers", "expected"),
    [
        (200, {"X-Cache": "HIT"}, "hit"),
        (200, {"X-Cache": "MISS"}, "miss"),
        (304, {"X-Cache": "HIT"}, "not_modified"),
        (200, {}, None),
        (200, {"X-Cache": "BYPASS"}, None),
    ],
)
def test_feed_outcome(status_code: int, headers: dict[str, str], expected: str | None) -> None:
    response = Response(status_code=status_code, headers=headers)

    assert feed_outcome(response) == expected


@pytest.mark.asyncio
async def test_requests_are_labelled_by_route_template(client: AsyncClient) -> None:
    await client.get(FEED)
    await client.get("/api/v1/feeds/missing/rss.xml")
    await client.get("/nowhere/sub_123")

    body = (await client.get("/metrics")).text

    assert 'path="/api/v1/feeds/{feed_slug}/rss.xml"' in body
    assert 'path="<unmatched>"' in body
    assert "feeds/missing" not in body
    assert "sub_123" not in body
    assert "podcaster_http_request_duration_seconds_bucket" in body


@pytest.mark.asyncio
async def test_feed_responses_counted_by_outcome(client: AsyncClient) -> None:
    etag = (await client.get(FEED)).headers["etag"]
    await client.get(FEED)
    await client.get(FEED, headers={"If-None-Match": etag})

    body = (await client.get("/metrics")).text

    for outcome in ("hit", "miss", "not_modified"):
        assert f'podcaster_feed_responses_total{{outcome="{outcome}"}}' in body
