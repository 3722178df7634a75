"""Script generation collaborator.

The orchestration core only depends on the ScriptGenerator protocol. The
HTTP implementation talks to the script generation service, which is rate
limited upstream (60 requests/minute by default).

HTTP Contract:
    POST {base_url}/scripts/generate
        {"post": PostSnapshot, "params": GenerationParams}
    POST {base_url}/scripts/regenerate
        {"post": PostSnapshot, "params": GenerationParams,
         "focus_areas": [...]}
    Both return a GeneratedScript JSON object (camelCase or snake_case).
    Responses may carry x-ratelimit-remaining / x-ratelimit-reset headers.

Retry Strategy:
    Transport errors, timeouts, 429 and 5xx responses are retried up to 3
    attempts with exponential backoff (1s → 10s). Every attempt takes a
    rate limiter token. Other 4xx responses fail immediately.
"""

import asyncio
from typing import Any, Protocol

import httpx
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from orchestrator.exceptions import GenerationFailure
from orchestrator.rate_limiter import RateLimiter
from orchestrator.schemas import GeneratedScript, GenerationParams, PostSnapshot
from orchestrator.services.content_validator import RegenerationHints
from orchestrator.utils.logging import get_logger

log = get_logger(__name__)


class ScriptGenerator(Protocol):
    """Produces video scripts for posts."""

    async def generate(self, snapshot: PostSnapshot, params: GenerationParams) -> GeneratedScript: ...

    async def regenerate(
        self,
        snapshot: PostSnapshot,
        params: GenerationParams,
        hints: RegenerationHints,
    ) -> GeneratedScript: ...


class HTTPScriptGenerator:
    """ScriptGenerator backed by the script generation HTTP service."""

    def __init__(
        self,
        base_url: str,
        rate_limiter: RateLimiter,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
        request_priority: int = 1,
    ):
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.request_priority = request_priority
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def generate(self, snapshot: PostSnapshot, params: GenerationParams) -> GeneratedScript:
        body = {
            "post": snapshot.model_dump(mode="json"),
            "params": params.model_dump(mode="json", by_alias=True),
        }
        return await self._request_script("/scripts/generate", body, snapshot.id)

    async def regenerate(
        self,
        snapshot: PostSnapshot,
        params: GenerationParams,
        hints: RegenerationHints,
    ) -> GeneratedScript:
        body = {
            "post": snapshot.model_dump(mode="json"),
            "params": params.model_dump(mode="json", by_alias=True),
            "focus_areas": hints.focus_areas,
        }
        return await self._request_script("/scripts/regenerate", body, snapshot.id)

    async def _request_script(self, path: str, body: dict[str, Any], post_id: str) -> GeneratedScript:
        try:
            data = await self._post(path, body)
        except httpx.HTTPStatusError as e:
            log.error(
                "script_generator_http_error",
                post_id=post_id,
                status_code=e.response.status_code,
                response=e.response.text[:500],
            )
            raise GenerationFailure(
                f"Script generator returned HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            log.error("script_generator_unreachable", post_id=post_id, error=str(e))
            raise GenerationFailure(f"Script generator request failed: {e}") from e

        try:
            return GeneratedScript.model_validate(data)
        except ValidationError as e:
            log.error("script_generator_invalid_response", post_id=post_id, error=str(e))
            raise GenerationFailure("Script generator returned an invalid script") from e

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, httpx.HTTPStatusError, asyncio.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        """POST once, honoring the rate limiter and its header feedback.

        Raises:
            httpx.HTTPStatusError: For 429/5xx (retried by tenacity).
            GenerationFailure: For other 4xx responses (not retried).
        """
        await self.rate_limiter.acquire(priority=self.request_priority, tag=path)

        response = await self._client.post(f"{self.base_url}{path}", json=body, timeout=self.timeout)
        self.rate_limiter.update_from_response_headers(response.headers)

        if response.status_code == 429 or response.status_code >= 500:
            log.warning(
                "script_generator_retryable_status",
                path=path,
                status_code=response.status_code,
            )
            response.raise_for_status()
        elif response.status_code >= 400:
            raise GenerationFailure(
                f"Script generator rejected request: HTTP {response.status_code} "
                f"{response.text[:200]}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise GenerationFailure("Script generator returned a non-JSON response") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
