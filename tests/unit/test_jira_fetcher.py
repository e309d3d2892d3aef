"""
Unit tests for the Jira search fetcher using httpx.MockTransport
"""

import json

import httpx
import pytest

from core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    DataValidationError,
    NetworkError,
    RateLimitError,
    RemoteClientError,
    RemoteServerError,
)
from ingestion.faults import classify_fault
from ingestion.fetchers.jira_fetcher import JiraSearchFetcher, build_jql
from models.base import FaultCategory
from schemas.sync import QuerySpec

BASE_URL = "https://tracker.example.com"


def _fetcher(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return JiraSearchFetcher(base_url=BASE_URL, api_token="secret", client=client, **kwargs)


class TestBuildJql:

    def test_plain_query_unchanged(self):
        assert build_jql(QuerySpec(query="project = ABC ORDER BY created DESC")) == "project = ABC ORDER BY created DESC"

    def test_resume_predicate_replaces_ordering(self):
        spec = QuerySpec(query="project = ABC ORDER BY created DESC", resume_after_key="ABC-50")
        assert build_jql(spec) == "(project = ABC) AND key > ABC-50 ORDER BY key ASC"


class TestFetchPage:

    @pytest.mark.asyncio
    async def test_request_and_pagination(self):
        seen = []

        def handler(request):
            seen.append((request, json.loads(request.content)))
            return httpx.Response(200, json={
                "startAt": 0, "maxResults": 2, "total": 5,
                "issues": [{"key": "ABC-1"}, {"key": "ABC-2"}],
            })

        page = await _fetcher(handler).fetch_page(QuerySpec(query="project = ABC", fields=("summary",)), None, 2)

        request, body = seen[0]
        assert str(request.url) == f"{BASE_URL}/rest/api/2/search"
        assert request.headers["Authorization"] == "Bearer secret"
        assert body == {"jql": "project = ABC", "startAt": 0, "maxResults": 2, "fields": ["summary"]}
        assert [i["key"] for i in page.items] == ["ABC-1", "ABC-2"]
        assert page.total == 5
        assert page.is_last is False
        assert page.next_page_token == "2"

    @pytest.mark.asyncio
    async def test_last_page(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["startAt"] == 4
            return httpx.Response(200, json={"total": 5, "issues": [{"key": "ABC-5"}]})

        page = await _fetcher(handler).fetch_page(QuerySpec(query="project = ABC"), "4", 2)
        assert page.is_last is True
        assert page.next_page_token is None

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self):
        fetcher = _fetcher(lambda request: httpx.Response(429, headers={"Retry-After": "3"}))

        with pytest.raises(RateLimitError) as exc_info:
            await fetcher.fetch_page(QuerySpec(query="x"), None, 10)

        fault = classify_fault(exc_info.value)
        assert fault.category == FaultCategory.RATE_LIMIT
        assert fault.retry_after_ms == 3000

    @pytest.mark.parametrize("status,error", [
        (500, RemoteServerError),
        (503, RemoteServerError),
        (401, AuthenticationError),
        (403, AuthenticationError),
        (400, RemoteClientError),
        (404, RemoteClientError),
    ])
    @pytest.mark.asyncio
    async def test_status_mapping(self, status, error):
        fetcher = _fetcher(lambda request: httpx.Response(status, text="nope"))

        with pytest.raises(error) as exc_info:
            await fetcher.fetch_page(QuerySpec(query="x"), None, 10)
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    async def test_transport_error_is_network(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NetworkError):
            await _fetcher(handler).fetch_page(QuerySpec(query="x"), None, 10)

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        fetcher = _fetcher(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(DataValidationError):
            await fetcher.fetch_page(QuerySpec(query="x"), None, 10)

    @pytest.mark.asyncio
    async def test_missing_issues(self):
        fetcher = _fetcher(lambda request: httpx.Response(200, json={"total": 3}))
        with pytest.raises(DataValidationError):
            await fetcher.fetch_page(QuerySpec(query="x"), None, 10)

    def test_missing_base_url(self):
        with pytest.raises(ConfigurationError):
            JiraSearchFetcher(base_url="", api_token=None)


class TestValidateQuery:

    @pytest.mark.asyncio
    async def test_asks_for_no_results(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"startAt": 0, "maxResults": 0, "total": 42, "issues": []})

        assert await _fetcher(handler).validate_query(QuerySpec(query="project = ABC")) is True

        body = seen[0]
        assert body["jql"] == "project = ABC"
        assert body["maxResults"] == 0
        assert body["validateQuery"] == "strict"

    @pytest.mark.asyncio
    async def test_rejected_query(self):
        fetcher = _fetcher(lambda request: httpx.Response(400, json={"errorMessages": ["bad jql"]}))
        assert await fetcher.validate_query(QuerySpec(query="project = = ABC")) is False

    @pytest.mark.asyncio
    async def test_unreachable_tracker(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        assert await _fetcher(handler).validate_query(QuerySpec(query="project = ABC")) is False
