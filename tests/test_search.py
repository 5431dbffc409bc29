"""Tests for HTTP search providers using httpx.MockTransport."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from citewise.errors import (
    InvalidQuery,
    ProviderUnavailable,
    SearchNetworkError,
    SearchProviderError,
    SearchRateLimited,
    SearchTimeout,
)
from citewise.search import (
    BraveSearchProvider,
    ExaSearchProvider,
    SearxngSearchProvider,
    TavilySearchProvider,
    build_search_provider,
)
from citewise.types import ContentType, Recency, SearchFilters, SearchQuery


def _transport(handler):
    return httpx.MockTransport(handler)


class TestTavily:
    @pytest.mark.asyncio
    async def test_parses_results_and_sends_filters(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(
                200,
                json={
                    "results": [
                        {
                            "url": "https://a.com/1",
                            "title": "A",
                            "content": "snippet a",
                            "score": 0.9,
                            "published_date": "2024-07-19T10:00:00Z",
                        },
                        {"url": "", "title": "skipped"},
                    ]
                },
            )

        provider = TavilySearchProvider(api_key="key", transport=_transport(handler))
        query = SearchQuery(
            text="crowdstrike outage",
            filters=SearchFilters(recency=Recency.WEEK, content_type=ContentType.NEWS, include_domains=["a.com"]),
        )
        results = await provider.search(query, top_k=5)

        assert seen["auth"] == "Bearer key"
        assert seen["body"]["query"] == "crowdstrike outage"
        assert seen["body"]["max_results"] == 5
        assert seen["body"]["time_range"] == "week"
        assert seen["body"]["topic"] == "news"
        assert seen["body"]["include_domains"] == ["a.com"]
        assert len(results) == 1
        assert results[0].provider == "tavily"
        assert results[0].published_at.year == 2024

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error",
        [(401, ProviderUnavailable), (429, SearchRateLimited), (400, InvalidQuery), (503, ProviderUnavailable)],
    )
    async def test_http_errors_are_typed(self, status, error):
        provider = TavilySearchProvider(api_key="key", transport=_transport(lambda r: httpx.Response(status)))
        with pytest.raises(error) as excinfo:
            await provider.search(SearchQuery(text="q"))
        assert excinfo.value.provider == "tavily"

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        provider = TavilySearchProvider(api_key="key", transport=_transport(handler))
        with pytest.raises(SearchTimeout) as excinfo:
            await provider.search(SearchQuery(text="q"))
        assert excinfo.value.retryable

    @pytest.mark.asyncio
    async def test_connect_error_is_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = TavilySearchProvider(api_key="key", transport=_transport(handler))
        with pytest.raises(SearchNetworkError):
            await provider.search(SearchQuery(text="q"))

    @pytest.mark.asyncio
    async def test_malformed_score_is_provider_error(self):
        body = {"results": [{"url": "https://a.com/x", "score": "n/a"}]}
        provider = TavilySearchProvider(api_key="key", transport=_transport(lambda r: httpx.Response(200, json=body)))
        with pytest.raises(SearchProviderError) as excinfo:
            await provider.search(SearchQuery(text="q"))
        assert excinfo.value.provider == "tavily"
        assert not excinfo.value.retryable

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            TavilySearchProvider(api_key="")


class TestBrave:
    @pytest.mark.asyncio
    async def test_freshness_and_position_scores(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            seen["token"] = request.headers["X-Subscription-Token"]
            return httpx.Response(
                200,
                json={
                    "web": {
                        "results": [
                            {"url": "https://a.com", "title": "A", "description": "first"},
                            {"url": "https://b.com", "title": "B", "description": "second"},
                        ]
                    }
                },
            )

        provider = BraveSearchProvider(api_key="brave", transport=_transport(handler))
        query = SearchQuery(text="rust", filters=SearchFilters(recency=Recency.DAY, exclude_domains=["spam.com"]))
        results = await provider.search(query)

        assert seen["token"] == "brave"
        assert seen["params"]["freshness"] == "pd"
        assert seen["params"]["q"] == "rust -site:spam.com"
        assert [r.url for r in results] == ["https://a.com", "https://b.com"]
        assert results[0].score > results[1].score

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        provider = BraveSearchProvider(api_key="brave", transport=_transport(lambda r: httpx.Response(429)))
        with pytest.raises(SearchRateLimited):
            await provider.search(SearchQuery(text="q"))



    @pytest.mark.asyncio
    async def test_null_web_section_is_empty(self):
        provider = BraveSearchProvider(api_key="brave", transport=_transport(lambda r: httpx.Response(200, json={"web": None})))
        assert await provider.search(SearchQuery(text="q")) == []

    @pytest.mark.asyncio
    async def test_non_object_body_is_provider_error(self):
        provider = BraveSearchProvider(api_key="brave", transport=_transport(lambda r: httpx.Response(200, json=[1, 2])))
        with pytest.raises(SearchProviderError) as excinfo:
            await provider.search(SearchQuery(text="q"))
        assert excinfo.value.provider == "brave"


class TestSearxng:
    def test_params_include_time_range_and_category(self):
        provider = SearxngSearchProvider(instance_url="http://searx.local/")
        params = provider.build_params(
            SearchQuery(
                text="election",
                filters=SearchFilters(recency=Recency.MONTH, content_type=ContentType.NEWS, include_domains=["a.org"]),
            )
        )
        assert params["time_range"] == "month"
        assert params["categories"] == "news"
        assert params["format"] == "json"
        assert "site:a.org" in params["q"]

    @pytest.mark.asyncio
    async def test_scores_normalized_to_top_result(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/search"
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"url": "https://a.com", "title": "A", "content": "x", "score": 4.0},
                        {"url": "https://b.com", "title": "B", "content": "y", "score": 2.0},
                    ]
                },
            )

        provider = SearxngSearchProvider(instance_url="http://searx.local", transport=_transport(handler))
        results = await provider.search(SearchQuery(text="q"))
        assert [r.score for r in results] == [1.0, 0.5]


class TestExa:
    @pytest.mark.asyncio
    async def test_payload_and_score_scaling(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["key"] = request.headers["x-api-key"]
            return httpx.Response(
                200,
                json={
                    "results": [
                        {
                            "url": "https://a.com/paper",
                            "title": "Paper",
                            "text": "full text",
                            "score": 0.3,
                            "publishedDate": "2024-07-20T00:00:00.000Z",
                        },
                        {"url": "https://b.com", "title": "B", "score": 0.9},
                        {"url": "https://c.com", "title": "C"},
                    ]
                },
            )

        provider = ExaSearchProvider(api_key="exa", transport=_transport(handler))
        query = SearchQuery(text="llm evals", filters=SearchFilters(include_domains=["a.com"], exclude_domains=["x.com"]))
        results = await provider.search(query, top_k=3)

        assert seen["key"] == "exa"
        assert seen["body"]["numResults"] == 3
        assert seen["body"]["contents"] == {"text": True}
        assert seen["body"]["includeDomains"] == ["a.com"]
        assert seen["body"]["excludeDomains"] == ["x.com"]
        assert "startPublishedDate" not in seen["body"]
        assert [r.score for r in results] == pytest.approx([0.75, 1.0, 0.0])
        assert results[0].snippet == "full text"
        assert results[1].snippet == ""
        assert results[0].published_at.day == 20

    def test_recency_becomes_start_date(self):
        provider = ExaSearchProvider(api_key="exa")
        now = datetime(2024, 7, 20, 12, 0, tzinfo=timezone.utc)
        payload = provider.build_payload(
            SearchQuery(text="q", filters=SearchFilters(recency=Recency.WEEK)), top_k=5, now=now
        )
        assert payload["startPublishedDate"] == "2024-07-13T12:00:00.000Z"

    @pytest.mark.asyncio
    async def test_http_errors_are_typed(self):
        provider = ExaSearchProvider(api_key="exa", transport=_transport(lambda r: httpx.Response(429)))
        with pytest.raises(SearchRateLimited) as excinfo:
            await provider.search(SearchQuery(text="q"))
        assert excinfo.value.provider == "exa"


def test_build_search_provider_returns_none_without_credentials():
    assert build_search_provider("tavily", {}) is None
    assert build_search_provider("searxng", {"url": ""}) is None
    assert isinstance(build_search_provider("brave", {"api_key": "k"}), BraveSearchProvider)
    assert build_search_provider("exa", {}) is None
    assert isinstance(build_search_provider("exa", {"api_key": "k"}), ExaSearchProvider)
    with pytest.raises(ValueError):
        build_search_provider("bing", {"api_key": "k"})
