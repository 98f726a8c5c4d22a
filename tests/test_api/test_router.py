"""Tests for the v1 API routes."""

import uuid
from xml.etree import ElementTree as ET

import pytest
from httpx import AsyncClient

from podcaster.core.events import ServiceContainer
from podcaster.services.cdn import InMemoryCdnPurgeClient

API = "/api/v1"
FEED = f"{API}/feeds/default/rss.xml"


class TestSubmissions:
    @pytest.mark.asyncio
    async def test_submit_returns_accepted(self, client: AsyncClient) -> None:
        response = await client.post(
            f"{API}/submissions",
            json={"source_url": "https://example.com/a", "content_kind": "url"},
        )

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "pending"
        assert data["submission_id"].startswith("sub_")
        assert data["job_id"]

    @pytest.mark.asyncio
    async def test_status_after_processing(
        self, client: AsyncClient, container: ServiceContainer
    ) -> None:
        created = await client.post(
            f"{API}/submissions", json={"source_url": "https://example.com/a"}
        )
        submission_id = created.json()["submission_id"]
        await container.submissions.wait_idle()

        response = await client.get(f"{API}/submissions/{submission_id}/status")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["progress"] == 100
        assert data["status_display"] == "Completed"
        assert "error_message" not in data

    @pytest.mark.asyncio
    async def test_invalid_url_is_rejected_with_kind(self, client: AsyncClient) -> None:
        response = await client.post(
            f"{API}/submissions",
            json={"source_url": "not a url", "content_kind": "url"},
            headers={"X-Request-ID": "req-invalid-url-0001"},
        )

        assert response.status_code == 422
        data = response.json()
        assert data["error"] == "ValidationError"
        assert data["kind"] == "validation"
        assert data["details"]["field"] == "source_url"
        assert data["correlation_id"] == "req-invalid-url-0001"

    @pytest.mark.asyncio
    async def test_unknown_content_kind(self, client: AsyncClient) -> None:
        response = await client.post(
            f"{API}/submissions",
            json={"source_url": "https://example.com/a", "content_kind": "fax"},
        )

        assert response.status_code == 422
        assert response.json()["details"]["field"] == "content_kind"

    @pytest.mark.asyncio
    async def test_malformed_body(self, client: AsyncClient) -> None:
        response = await client.post(f"{API}/submissions", json={"note": "no url"})

        assert response.status_code == 422
        data = response.json()
        assert data["error"] == "RequestValidationError"
        assert data["kind"] == "validation"
        assert data["details"]["errors"][0]["loc"] == ["body", "source_url"]

    @pytest.mark.asyncio
    async def test_status_of_unknown_submission(self, client: AsyncClient) -> None:
        response = await client.get(f"{API}/submissions/sub_missing/status")

        assert response.status_code == 404
        data = response.json()
        assert data["error"] == "HTTPException"
        assert data["message"] == "No processing job found for submission sub_missing"


class TestFeed:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, client: AsyncClient) -> None:
        first = await client.get(FEED)
        second = await client.get(FEED)

        assert first.status_code == 200
        assert first.headers["content-type"].startswith("application/rss+xml")
        assert first.headers["x-cache"] == "MISS"
        assert second.headers["x-cache"] == "HIT"
        assert first.headers["etag"] == second.headers["etag"]
        assert first.content == second.content
        assert first.headers["cache-control"] == "public, max-age=60"
        assert "last-modified" in first.headers
        assert len(ET.fromstring(first.content).findall("./channel/item")) == 3

    @pytest.mark.asyncio
    async def test_if_none_match_returns_not_modified(self, client: AsyncClient) -> None:
        etag = (await client.get(FEED)).headers["etag"]

        response = await client.get(FEED, headers={"If-None-Match": etag})

        assert response.status_code == 304
        assert response.content == b""
        assert response.headers["etag"] == etag

    @pytest.mark.asyncio
    async def test_stale_if_none_match_gets_full_body(self, client: AsyncClient) -> None:
        response = await client.get(FEED, headers={"If-None-Match": '"0000000000000000"'})

        assert response.status_code == 200
        assert response.content

    @pytest.mark.asyncio
    async def test_query_options_use_separate_entries(self, client: AsyncClient) -> None:
        await client.get(FEED)

        response = await client.get(FEED, params={"sort_order": "oldest", "max_episodes": 2})

        assert response.headers["x-cache"] == "MISS"
        guids = [i.findtext("guid") for i in ET.fromstring(response.content).iter("item")]
        assert guids == ["episode_ep2", "episode_ep3"]

    @pytest.mark.asyncio
    async def test_invalid_query(self, client: AsyncClient) -> None:
        response = await client.get(FEED, params={"max_episodes": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_feed(self, client: AsyncClient) -> None:
        response = await client.get(f"{API}/feeds/missing/rss.xml")

        assert response.status_code == 404
        data = response.json()
        assert data["error"] == "HTTPException"
        assert data["message"] == "Unknown feed: missing"


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_manual_invalidation(
        self, client: AsyncClient, cdn_client: InMemoryCdnPurgeClient
    ) -> None:
        await client.get(FEED)

        response = await client.post(
            f"{API}/feeds/default/invalidate", json={"reason": "artwork changed"}
        )
        after = await client.get(FEED)

        assert response.status_code == 200
        data = response.json()
        assert data["invalidated_key_count"] == 1
        assert data["strategy"] == "immediate"
        assert data["reason"] == "artwork changed"
        assert data["cdn_error"] is None
        assert after.headers["x-cache"] == "MISS"
        assert cdn_client.requests[-1].content_paths == [
            "/feeds/default/rss.xml",
            "/feeds/default/episodes",
        ]

    @pytest.mark.asyncio
    async def test_invalidation_without_body(self, client: AsyncClient) -> None:
        response = await client.post(f"{API}/feeds/default/invalidate")

        assert response.status_code == 200
        assert response.json()["reason"] == "manual invalidation"

    @pytest.mark.asyncio
    async def test_invalidate_unknown_feed(self, client: AsyncClient) -> None:
        response = await client.post(f"{API}/feeds/missing/invalidate")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_history_and_drain(self, client: AsyncClient) -> None:
        await client.post(f"{API}/feeds/default/invalidate")

        history = await client.get(f"{API}/feeds/invalidations")
        drained = await client.post(f"{API}/feeds/invalidations/drain")

        assert history.status_code == 200
        assert history.json()["strategy"] == "immediate"
        assert history.json()["pending"] == 0
        assert len(history.json()["reports"]) == 1
        assert drained.json() == {
            "drained_feeds": 0,
            "invalidated_key_count": 0,
            "reports": [],
        }

    @pytest.mark.asyncio
    async def test_completed_job_invalidates_feed(
        self,
        client: AsyncClient,
        container: ServiceContainer,
        cdn_client: InMemoryCdnPurgeClient,
    ) -> None:
        before = await client.get(FEED)
        await client.post(f"{API}/submissions", json={"source_url": "https://example.com/a"})
        await container.submissions.wait_idle()

        after = await client.get(FEED)

        assert after.headers["x-cache"] == "MISS"
        assert after.headers["etag"] != before.headers["etag"]
        assert len(ET.fromstring(after.content).findall("./channel/item")) == 4
        assert len(cdn_client.requests) == 1


class TestOperations:
    @pytest.mark.asyncio
    async def test_cache_stats(self, client: AsyncClient) -> None:
        await client.get(FEED)
        await client.get(FEED)

        response = await client.get(f"{API}/cache/stats")

        data = response.json()
        assert data["stats"]["cache_hits"] == 1
        assert data["stats"]["cache_misses"] == 1
        assert data["stats"]["hit_rate"] == 0.5
        assert data["entries"] == 1
        assert data["health"]["healthy"] is True
        assert data["size_bytes"] > 0

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get(f"{API}/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["cache_sweeper"] is True
        assert data["components"]["job_runner"] is True
        assert data["version"] == "0.1.0"
        assert data["correlation_id"] == response.headers["x-request-id"]

    @pytest.mark.asyncio
    async def test_metrics(self, client: AsyncClient) -> None:
        await client.get(FEED)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "podcaster_http_requests_total" in response.text
        assert "podcaster_feed_cache_requests_total" in response.text

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client: AsyncClient) -> None:
        response = await client.get(
            f"{API}/health", headers={"X-Request-ID": "edge-7f3a9c2e1b4d5a6f"}
        )

        assert response.headers["x-request-id"] == "edge-7f3a9c2e1b4d5a6f"

    @pytest.mark.asyncio
    async def test_invalid_request_id_is_replaced(self, client: AsyncClient) -> None:
        response = await client.get(f"{API}/health", headers={"X-Request-ID": "bogus"})

        generated = response.headers["x-request-id"]
        assert generated != "bogus"
        assert uuid.UUID(generated)
