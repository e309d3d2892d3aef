"""
Remote fetcher for Jira-compatible issue trackers.

This module provides paged issue search with:
- Bearer token authentication
- Offset pagination (``startAt``) carried as the continuation token
- Resume predicate rendered into the query (``key > LAST``)
- HTTP failures mapped onto the sync exception hierarchy so the fault
  classifier can pick a recovery strategy

The fetcher never retries on its own; the query executor owns retries.
"""

import re
from typing import Any, Dict, Optional

import httpx

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    DataValidationError,
    NetworkError,
    RateLimitError,
    RemoteClientError,
    RemoteServerError,
    SyncException,
)
from ingestion.interfaces import RemoteFetcher
from schemas.sync import PageResult, QuerySpec
import logging

logger = logging.getLogger(__name__)

ORDER_BY_PATTERN = re.compile(r"\s+ORDER\s+BY\s+.*$", re.IGNORECASE | re.DOTALL)


def build_jql(spec: QuerySpec) -> str:
    """
    Render the query sent to the tracker.

    When resuming, results must come in key order so that "everything after
    the last key" is well defined; any caller ordering is dropped.
    """
    if not spec.resume_after_key:
        return spec.query

    base = ORDER_BY_PATTERN.sub("", spec.query).strip()
    return f"({base}) AND key > {spec.resume_after_key} ORDER BY key ASC"


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class JiraSearchFetcher(RemoteFetcher):
    """
    Fetch pages of issues from the tracker's search endpoint.

    Attributes:
        base_url: Tracker root URL
        search_path: Search endpoint path (default: /rest/api/2/search)
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_token: Optional[str] = None,
        search_path: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        if base_url is None:
            base_url = settings.TRACKER_BASE_URL
        self.base_url = (base_url or "").rstrip("/")
        self.api_token = api_token if api_token is not None else settings.TRACKER_API_TOKEN
        self.search_path = search_path or settings.TRACKER_SEARCH_PATH
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self._client = client

        if not self.base_url:
            raise ConfigurationError(
                "Tracker base URL is not configured",
                context={"setting": "TRACKER_BASE_URL"}
            )

    @property
    def search_url(self) -> str:
        return f"{self.base_url}{self.search_path}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def fetch_page(
        self,
        spec: QuerySpec,
        page_token: Optional[str],
        max_results: int
    ) -> PageResult:
        """
        Fetch one page of search results.

        Args:
            spec: Query to run
            page_token: ``startAt`` offset from the previous page
            max_results: Page size to request

        Returns:
            PageResult with the raw issue dicts

        Raises:
            NetworkError, RateLimitError, RemoteServerError,
            RemoteClientError, AuthenticationError, DataValidationError
        """
        start_at = int(page_token) if page_token else 0
        body = {
            "jql": build_jql(spec),
            "startAt": start_at,
            "maxResults": max_results,
            "fields": list(spec.fields),
        }

        logger.debug(f"Searching {self.search_url} startAt={start_at} maxResults={max_results}")

        response = await self._post(body)
        self._raise_for_status(response)
        return self._parse_page(response, start_at)

    async def validate_query(self, spec: QuerySpec) -> bool:
        """
        Ask the tracker to validate the query without returning issues.

        Returns:
            True if the tracker accepted the query, False otherwise
        """
        if not spec.query.strip():
            return False

        body = {
            "jql": build_jql(spec),
            "startAt": 0,
            "maxResults": 0,
            "validateQuery": "strict",
            "fields": [],
        }

        try:
            response = await self._post(body)
            self._raise_for_status(response)
        except SyncException as e:
            logger.warning(f"Query validation failed for {spec.query!r}: {e.message}")
            return False
        return True

    async def _post(self, body: Dict[str, Any]) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.post(
                    self.search_url, json=body, headers=self._headers(), timeout=self.timeout
                )
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(self.search_url, json=body, headers=self._headers())
        except httpx.TransportError as e:
            raise NetworkError(
                f"Network error while searching {self.search_url}: {e}",
                context={"api_url": self.search_url, "start_at": body.get("startAt")},
                original_exception=e
            )

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        context = {
            "api_url": self.search_url,
            "response_body": response.text[:500],
        }

        if status == 429:
            raise RateLimitError(
                f"Rate limit exceeded for {self.search_url}",
                context=context,
                retry_after=_parse_retry_after(response)
            )
        if status >= 500:
            raise RemoteServerError(
                f"Server error {status} from {self.search_url}",
                context=context,
                status_code=status
            )
        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed for {self.search_url}",
                context=context,
                status_code=status
            )
        raise RemoteClientError(
            f"Request rejected with {status} by {self.search_url}",
            context=context,
            status_code=status
        )

    def _parse_page(self, response: httpx.Response, start_at: int) -> PageResult:
        try:
            data: Dict[str, Any] = response.json()
        except ValueError as e:
            raise DataValidationError(
                "Search response is not valid JSON",
                context={"api_url": self.search_url, "response_body": response.text[:500]},
                original_exception=e
            )

        issues = data.get("issues") if isinstance(data, dict) else None
        if not isinstance(issues, list):
            raise DataValidationError(
                "Search response has no 'issues' list",
                context={"api_url": self.search_url, "keys": sorted(data) if isinstance(data, dict) else None}
            )

        total = int(data.get("total", len(issues)) or 0)
        next_offset = start_at + len(issues)
        is_last = not issues or next_offset >= total

        return PageResult(
            items=issues,
            total=max(total, 0),
            is_last=is_last,
            next_page_token=None if is_last else str(next_offset),
        )
