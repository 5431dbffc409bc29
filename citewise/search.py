from __future__ import annotations

import abc
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from .errors import (
    InvalidQuery,
    ProviderUnavailable,
    SearchError,
    SearchNetworkError,
    SearchProviderError,
    SearchRateLimited,
    SearchTimeout,
)
from .types import ContentType, Recency, SearchQuery, SearchResult

logger = logging.getLogger(__name__)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def map_http_error(status_code: int, provider: str) -> SearchError:
    if status_code in (401, 403):
        return ProviderUnavailable(f"{provider} rejected credentials (HTTP {status_code})", provider=provider)
    if status_code == 429:
        return SearchRateLimited(f"rate limited by {provider}", provider=provider)
    if status_code == 400:
        return InvalidQuery(f"{provider} rejected the query", provider=provider)
    if status_code >= 500:
        return ProviderUnavailable(f"{provider} unavailable (HTTP {status_code})", provider=provider)
    return SearchProviderError(f"{provider} returned HTTP {status_code}", provider=provider)


def map_transport_error(exc: httpx.HTTPError, provider: str, timeout: float) -> SearchError:
    if isinstance(exc, httpx.TimeoutException):
        return SearchTimeout(f"{provider} search timeout after {timeout:g}s", provider=provider)
    if isinstance(exc, httpx.ConnectError):
        return SearchNetworkError(f"connection to {provider} failed: {exc}", provider=provider)
    return SearchNetworkError(str(exc) or exc.__class__.__name__, provider=provider)


class SearchProvider(abc.ABC):
    """Abstract search provider."""

    provider_id = "search"
    supports_recency_filter = False
    supports_domain_filter = False

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._transport = transport

    @abc.abstractmethod
    async def search(self, query: SearchQuery, top_k: int = 10) -> List[SearchResult]:
        raise NotImplementedError

    async def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise map_transport_error(exc, self.provider_id, self.timeout) from exc
        if response.status_code != 200:
            logger.warning("%s search returned HTTP %s", self.provider_id, response.status_code)
            raise map_http_error(response.status_code, self.provider_id)
        try:
            data = response.json()
        except ValueError as exc:
            raise SearchProviderError(
                f"failed to parse {self.provider_id} response: {exc}", provider=self.provider_id
            ) from exc
        if not isinstance(data, dict):
            raise SearchProviderError(
                f"unexpected {self.provider_id} response type: {type(data).__name__}", provider=self.provider_id
            )
        return data

    def _decode(self, data: Dict[str, Any], top_k: int) -> List[SearchResult]:
        """Run the provider parser, turning malformed payloads into ``SearchProviderError``."""

        try:
            return self._parse(data, top_k)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Malformed %s response: %s", self.provider_id, exc)
            raise SearchProviderError(
                f"malformed {self.provider_id} response: {exc}", provider=self.provider_id
            ) from exc

    def _parse(self, data: Dict[str, Any], top_k: int) -> List[SearchResult]:
        raise NotImplementedError


class TavilySearchProvider(SearchProvider):
    """Tavily search API implementation."""

    provider_id = "tavily"
    supports_recency_filter = True
    supports_domain_filter = True

    def __init__(
        self,
        api_key: str,
        endpoint: str = "https://api.tavily.com/search",
        search_depth: str = "basic",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        if not api_key:
            raise ValueError("Tavily API key is required.")
        self.api_key = api_key
        self.endpoint = endpoint
        self.search_depth = search_depth

    def build_payload(self, query: SearchQuery, top_k: int) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "query": query.text,
            "search_depth": self.search_depth,
            "max_results": top_k,
            "include_answer": False,
            "include_raw_content": False,
        }
        filters = query.filters
        if filters.recency and filters.recency != Recency.ANY:
            payload["time_range"] = filters.recency.value
        if filters.include_domains:
            payload["include_domains"] = list(filters.include_domains)
        if filters.exclude_domains:
            payload["exclude_domains"] = list(filters.exclude_domains)
        if filters.content_type:
            payload["topic"] = "news" if filters.content_type == ContentType.NEWS else "general"
        return payload

    async def search(self, query: SearchQuery, top_k: int = 10) -> List[SearchResult]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        data = await self._request("POST", self.endpoint, json=self.build_payload(query, top_k), headers=headers)
        results = self._decode(data, top_k)
        logger.debug("tavily returned %s results for %s", len(results), query.text)
        return results

    def _parse(self, data: Dict[str, Any], top_k: int) -> List[SearchResult]:
        results: List[SearchResult] = []
        for item in data.get("results") or []:
            url = item.get("url")
            if not url:
                continue
            results.append(
                SearchResult(
                    url=url,
                    title=item.get("title") or "Untitled",
                    snippet=item.get("content", ""),
                    score=float(item.get("score") or 0.0),
                    published_at=_parse_datetime(item.get("published_date")),
                    provider=self.provider_id,
                )
            )
        return results


class BraveSearchProvider(SearchProvider):
    """Brave search API implementation."""

    provider_id = "brave"
    supports_recency_filter = True

    _FRESHNESS = {Recency.DAY: "pd", Recency.WEEK: "pw", Recency.MONTH: "pm", Recency.YEAR: "py"}

    def __init__(
        self,
        api_key: str,
        endpoint: str = "https://api.search.brave.com/res/v1/web/search",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        if not api_key:
            raise ValueError("Brave API key is required.")
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")

    async def search(self, query: SearchQuery, top_k: int = 10) -> List[SearchResult]:
        params: Dict[str, Any] = {"q": self._query_text(query), "count": min(top_k, 20)}
        freshness = self._FRESHNESS.get(query.filters.recency) if query.filters.recency else None
        if freshness:
            params["freshness"] = freshness
        headers = {
            "Accept": "application/json",
            "X-Subscription-Token": self.api_key,
        }
        payload = await self._request("GET", self.endpoint, params=params, headers=headers)
        return self._decode(payload, top_k)

    def _query_text(self, query: SearchQuery) -> str:
        parts = [query.text]
        parts.extend(f"-site:{domain}" for domain in query.filters.exclude_domains)
        return " ".join(parts)

    def _parse(self, payload: Dict[str, Any], top_k: int) -> List[SearchResult]:
        web_results = (payload.get("web") or {}).get("results") or []
        results: List[SearchResult] = []
        total = max(len(web_results), 1)
        for position, item in enumerate(web_results):
            url = item.get("url")
            if not url:
                continue
            # Brave has no relevance score; derive one from SERP position.
            results.append(
                SearchResult(
                    url=url,
                    title=item.get("title", "Untitled"),
                    snippet=item.get("description") or item.get("snippet", ""),
                    score=1.0 - position / total,
                    published_at=_parse_datetime(item.get("page_age") or item.get("published")),
                    provider=self.provider_id,
                )
            )
        return results


class SearxngSearchProvider(SearchProvider):
    """SearXNG metasearch JSON API implementation."""

    provider_id = "searxng"
    supports_recency_filter = True
    supports_domain_filter = True

    _TIME_RANGE = {Recency.DAY: "day", Recency.WEEK: "week", Recency.MONTH: "month", Recency.YEAR: "year"}
    _CATEGORIES = {
        ContentType.NEWS: "news",
        ContentType.ACADEMIC: "science",
        ContentType.FORUM: "social media",
    }

    def __init__(
        self,
        instance_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        if not instance_url:
            raise ValueError("SearXNG instance URL is required.")
        self.instance_url = instance_url.rstrip("/")

    def build_params(self, query: SearchQuery) -> Dict[str, Any]:
        text = query.text
        if query.filters.include_domains:
            text += " " + " OR ".join(f"site:{domain}" for domain in query.filters.include_domains)
        params: Dict[str, Any] = {"q": text, "format": "json"}
        time_range = self._TIME_RANGE.get(query.filters.recency) if query.filters.recency else None
        if time_range:
            params["time_range"] = time_range
        if query.filters.content_type in self._CATEGORIES:
            params["categories"] = self._CATEGORIES[query.filters.content_type]
        return params

    async def search(self, query: SearchQuery, top_k: int = 10) -> List[SearchResult]:
        data = await self._request("GET", f"{self.instance_url}/search", params=self.build_params(query))
        return self._decode(data, top_k)

    def _parse(self, data: Dict[str, Any], top_k: int) -> List[SearchResult]:
        raw = (data.get("results") or [])[:top_k]
        top_score = max((float(item.get("score") or 0.0) for item in raw), default=0.0) or 1.0
        results: List[SearchResult] = []
        for item in raw:
            url = item.get("url")
            if not url:
                continue
            results.append(
                SearchResult(
                    url=url,
                    title=item.get("title") or "Untitled",
                    snippet=item.get("content", ""),
                    score=float(item.get("score") or 0.0) / top_score,
                    published_at=_parse_datetime(item.get("publishedDate")),
                    provider=self.provider_id,
                )
            )
        return results


class ExaSearchProvider(SearchProvider):
    """Exa neural search API implementation."""

    provider_id = "exa"
    supports_recency_filter = True
    supports_domain_filter = True

    _RECENCY_DAYS = {Recency.DAY: 1, Recency.WEEK: 7, Recency.MONTH: 30, Recency.YEAR: 365}

    def __init__(
        self,
        api_key: str,
        endpoint: str = "https://api.exa.ai/search",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeout=timeout, transport=transport)
        if not api_key:
            raise ValueError("Exa API key is required.")
        self.api_key = api_key
        self.endpoint = endpoint

    def build_payload(self, query: SearchQuery, top_k: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "query": query.text,
            "type": "auto",
            "numResults": top_k,
            "contents": {"text": True},
        }
        filters = query.filters
        if filters.include_domains:
            payload["includeDomains"] = list(filters.include_domains)
        if filters.exclude_domains:
            payload["excludeDomains"] = list(filters.exclude_domains)
        days = self._RECENCY_DAYS.get(filters.recency) if filters.recency else None
        if days:
            start = (now or datetime.now(timezone.utc)) - timedelta(days=days)
            payload["startPublishedDate"] = start.strftime("%Y-%m-%dT%H:%M:%S.000Z")
        return payload

    async def search(self, query: SearchQuery, top_k: int = 10) -> List[SearchResult]:
        headers = {"x-api-key": self.api_key, "Content-Type": "application/json"}
        data = await self._request("POST", self.endpoint, json=self.build_payload(query, top_k), headers=headers)
        return self._decode(data, top_k)

    def _parse(self, data: Dict[str, Any], top_k: int) -> List[SearchResult]:
        results: List[SearchResult] = []
        for item in (data.get("results") or [])[:top_k]:
            url = item.get("url")
            if not url:
                continue
            # Exa scores cluster well below 1.0; stretch them onto the shared scale.
            score = min(max(float(item.get("score") or 0.0) * 2.5, 0.0), 1.0)
            results.append(
                SearchResult(
                    url=url,
                    title=item.get("title") or "Untitled",
                    snippet=item.get("text") or "",
                    score=score,
                    published_at=_parse_datetime(item.get("publishedDate")),
                    provider=self.provider_id,
                )
            )
        return results


def build_search_provider(
    provider_id: str, entry: Dict[str, Any], timeout: Optional[float] = None
) -> Optional[SearchProvider]:
    """Build a provider from config, or ``None`` when its credentials are absent."""

    timeout = float(entry.get("timeout") or timeout or 10.0)
    if provider_id == "tavily":
        if not entry.get("api_key"):
            return None
        return TavilySearchProvider(
            api_key=entry["api_key"],
            search_depth=entry.get("search_depth", "basic"),
            timeout=timeout,
        )
    if provider_id == "brave":
        if not entry.get("api_key"):
            return None
        return BraveSearchProvider(
            api_key=entry["api_key"],
            endpoint=entry.get("endpoint", "https://api.search.brave.com/res/v1/web/search"),
            timeout=timeout,
        )
    if provider_id == "searxng":
        if not entry.get("url"):
            return None
        return SearxngSearchProvider(instance_url=entry["url"], timeout=timeout)
    if provider_id == "exa":
        if not entry.get("api_key"):
            return None
        return ExaSearchProvider(
            api_key=entry["api_key"],
            endpoint=entry.get("endpoint", "https://api.exa.ai/search"),
            timeout=timeout,
        )
    raise ValueError(f"Unsupported search provider: {provider_id}")
