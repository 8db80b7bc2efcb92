"""MetaSync — Meta API Client.

Handles authentication, retry logic, rate limiting, and pagination.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx

from metasync.config import settings
from metasync.core.logging import get_logger

logger = get_logger("meta.client")

MAX_RETRIES = settings.meta_max_retries
RETRY_BASE_DELAY = settings.meta_retry_base_delay  # seconds
MAX_PAGES = settings.meta_max_pages

# Graph API throttling codes: app/user limit, ads-management and ads-insights
RATE_LIMIT_CODES = {17, 80000, 80001, 80004}


class MetaAPIError(Exception):
    """Raised when Meta API returns an error."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        error_code: int = 0,
        error_type: str = "",
        error_subcode: Optional[int] = None,
        fbtrace_id: Optional[str] = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.error_type = error_type
        self.error_subcode = error_subcode
        self.fbtrace_id = fbtrace_id
        super().__init__(message)


class MetaRateLimitError(MetaAPIError):
    """Rate limiting persisted past the retry budget."""


def _endpoint(url: str) -> str:
    """URL path only, so the access token never reaches the logs."""
    return httpx.URL(url).path


def _parse_error_body(resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    error = body.get("error") if isinstance(body, dict) else None
    return error if isinstance(error, dict) else {}


class MetaClient:
    """Async HTTP client for Meta Marketing API.

    Constructed by the caller and handed to the sync engine; there is no
    shared default instance.
    """

    def __init__(
        self,
        access_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_retries: int = MAX_RETRIES,
        retry_base_delay: float = RETRY_BASE_DELAY,
        max_pages: int = MAX_PAGES,
    ):
        self.access_token = access_token or settings.meta_access_token
        if not self.access_token:
            raise ValueError("Meta access token is required")
        self.base_url = settings.meta_api_base
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.max_pages = max_pages
        self._client: Optional[httpx.AsyncClient] = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=30.0)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "MetaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def build_url(self, path: str, params: Dict[str, Any] | None = None) -> str:
        """Absolute Graph API URL with the token as a query parameter."""
        query: Dict[str, str] = {"access_token": self.access_token}
        for key, value in (params or {}).items():
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                query[key] = ",".join(str(v) for v in value)
            else:
                query[key] = str(value)
        return str(httpx.URL(f"{self.base_url}{path}", params=query))

    def _backoff(self, attempt: int) -> float:
        return self.retry_base_delay * (2**attempt)

    # ── Core Request Method ──

    async def fetch(self, url: str) -> Dict[str, Any]:
        """GET a URL with retry + rate-limit handling.

        Rate limits and network errors get `max_retries` retries with
        exponential backoff; every other failure is raised immediately.
        """
        client = await self._get_client()
        endpoint = _endpoint(url)

        for attempt in range(self.max_retries + 1):
            try:
                resp = await client.get(url)
            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    wait = self._backoff(attempt)
                    logger.warning(
                        f"Network error: {e!r}. Retrying in {wait}s "
                        f"(attempt {attempt + 1}/{self.max_retries})",
                        extra={"endpoint": endpoint, "attempt": attempt + 1},
                    )
                    await asyncio.sleep(wait)
                    continue
                raise MetaAPIError(
                    f"Connection failed after {self.max_retries} retries: {e!r}"
                ) from e

            if resp.is_success:
                try:
                    return resp.json()
                except ValueError as e:
                    raise MetaAPIError(
                        f"Malformed response from {endpoint}",
                        status_code=resp.status_code,
                    ) from e

            error = _parse_error_body(resp)
            error_code = error.get("code") or 0
            message = error.get("message") or resp.reason_phrase

            if resp.status_code == 429 or error_code in RATE_LIMIT_CODES:
                if attempt < self.max_retries:
                    wait = self._backoff(attempt)
                    logger.warning(
                        f"Rate limited ({error_code or resp.status_code}). "
                        f"Retrying in {wait}s (attempt {attempt + 1}/{self.max_retries})",
                        extra={
                            "endpoint": endpoint,
                            "status_code": resp.status_code,
                            "attempt": attempt + 1,
                        },
                    )
                    await asyncio.sleep(wait)
                    continue
                raise MetaRateLimitError(
                    f"Meta API Error: {message} (code: {error_code or resp.status_code})",
                    resp.status_code,
                    error_code,
                    error.get("type", ""),
                    error.get("error_subcode"),
                    error.get("fbtrace_id"),
                )

            raise MetaAPIError(
                f"Meta API Error: {message} (code: {error_code or resp.status_code})",
                resp.status_code,
                error_code,
                error.get("type", ""),
                error.get("error_subcode"),
                error.get("fbtrace_id"),
            )

        raise MetaAPIError("Max retries exhausted")

    # ── Pagination ──

    async def fetch_all_pages(self, initial_url: str) -> List[Dict[str, Any]]:
        """Walk `paging.next` links and return every item in arrival order.

        Stops on a missing `next`, an empty page, `max_pages`, or a URL that
        was already fetched.
        """
        all_data: List[Dict[str, Any]] = []
        seen_urls: set[str] = set()
        current_url: Optional[str] = initial_url
        page_count = 0

        while current_url and page_count < self.max_pages:
            if current_url in seen_urls:
                logger.warning(
                    "Duplicate pagination URL detected, stopping pagination",
                    extra={"endpoint": _endpoint(current_url)},
                )
                break
            seen_urls.add(current_url)
            page_count += 1

            result = await self.fetch(current_url)
            data = result.get("data") or []
            if not data:
                break

            all_data.extend(data)
            logger.debug(
                f"Fetched page {page_count}, {len(data)} items (total: {len(all_data)})"
            )

            current_url = (result.get("paging") or {}).get("next")

        if current_url and page_count >= self.max_pages:
            logger.warning(
                f"Reached maximum page limit ({self.max_pages}), stopping pagination"
            )

        logger.info(
            f"Fetched {len(all_data)} records from {_endpoint(initial_url)}",
            extra={"endpoint": _endpoint(initial_url)},
        )
        return all_data

    @staticmethod
    def encode_json(value: Any) -> str:
        """Compact JSON for Graph query parameters (filtering, time_range)."""
        return json.dumps(value, separators=(",", ":"))
