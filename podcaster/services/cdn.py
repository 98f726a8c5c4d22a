"""CDN purge collaborator."""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field

from podcaster.core.errors import ExternalServiceError
from podcaster.core.logging import get_logger

logger = get_logger(__name__)

# Purges are asynchronous on the provider side
DEFAULT_PURGE_COMPLETION = timedelta(minutes=10)


class CdnPurgeRequest(BaseModel):
    """Paths to purge and why."""

    content_paths: list[str] = Field(min_length=1)
    reason: str


class CdnPurgeResult(BaseModel):
    """Provider acknowledgement of a purge request."""

    success: bool
    purge_id: str
    estimated_completion: datetime | None = None


@runtime_checkable
class CdnPurgeClient(Protocol):
    """Purges public paths from the CDN edge."""

    async def purge(self, request: CdnPurgeRequest) -> CdnPurgeResult: ...


class HttpCdnPurgeClient:
    """Sends purge requests to an HTTP purge endpoint."""

    def __init__(
        self,
        purge_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize client.

        Args:
            purge_url: Endpoint accepting ``{"contentPaths": [...], "reason": ...}``
            api_key: Optional bearer token
            timeout: Request timeout in seconds
            client: Pre-built client, mainly for tests
        """
        self.purge_url = purge_url
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def purge(self, request: CdnPurgeRequest) -> CdnPurgeResult:
        """Submit one purge request.

        Raises:
            ExternalServiceError: On transport errors or non-2xx responses
        """
        payload = {"contentPaths": request.content_paths, "reason": request.reason}
        try:
            response = await self._client.post(self.purge_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                "cdn",
                f"purge rejected with status {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.TransportError as e:
            raise ExternalServiceError("cdn", f"purge request failed: {e}") from e

        body: dict[str, Any] = response.json() if response.content else {}
        purge_id = str(body.get("purgeId") or body.get("id") or f"purge-{uuid.uuid4()}")
        completion = body.get("estimatedCompletion")
        return CdnPurgeResult(
            success=True,
            purge_id=purge_id,
            estimated_completion=(
                completion
                if completion
                else datetime.now(UTC) + DEFAULT_PURGE_COMPLETION
            ),
        )

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryCdnPurgeClient:
    """Records purge requests instead of sending them.

    Used when no CDN is configured and by the test suite. ``fail_with`` makes
    every call raise, to exercise failure handling.
    """

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.requests: list[CdnPurgeRequest] = []
        self.fail_with = fail_with

    async def purge(self, request: CdnPurgeRequest) -> CdnPurgeResult:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        logger.info(
            "cdn_purge_recorded",
            paths=request.content_paths,
            reason=request.reason,
        )
        return CdnPurgeResult(
            success=True,
            purge_id=f"purge-{len(self.requests)}",
            estimated_completion=datetime.now(UTC),
        )

    @property
    def purged_paths(self) -> list[str]:
        return [path for request in self.requests for path in request.content_paths]
