"""Shared fakes for pipeline tests."""

import asyncio
import hashlib
import json
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Sequence

import numpy as np
import pytest

from citewise.errors import LlmError, SearchError
from citewise.llm import LLMMessage, LLMResponse
from citewise.registry import Capability, RegistryBuilder
from citewise.synth import SynthesisProvider
from citewise.types import SearchQuery, SearchResult, Source, SourceMetadata, extract_domain

SOURCE_ID = re.compile(r"\[(src_[A-Za-z0-9_\-]{12})\]")


class FakeSearchProvider:
    """Returns canned results (or raises) regardless of the query."""

    def __init__(
        self,
        provider_id: str,
        results: Optional[List[SearchResult]] = None,
        error: Optional[SearchError] = None,
        delay: float = 0.0,
    ):
        self.provider_id = provider_id
        self.results = results or []
        self.error = error
        self.delay = delay
        self.calls: List[SearchQuery] = []

    async def search(self, query: SearchQuery, top_k: int = 10) -> List[SearchResult]:
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.results[:top_k])


def cite_first_sources(messages: Sequence[LLMMessage], confidence: str = "high", count: int = 2) -> str:
    """Answer citing the first ``count`` source ids found in the prompt."""

    prompt = messages[-1].content
    ids = list(dict.fromkeys(SOURCE_ID.findall(prompt)))[:count]
    citations = [{"claim": f"Claim backed by {source_id}", "source_id": source_id} for source_id in ids]
    return (
        '{"summary": "A faulty content update crashed Windows hosts.", '
        '"detail": "Details with citations.", '
        f'"citations": {json.dumps(citations)}, '
        f'"confidence": "{confidence}", '
        '"limitations": []}'
    )


class FakeLLMClient:
    def __init__(
        self,
        model: str = "fake-model",
        responder: Optional[Callable[[Sequence[LLMMessage]], str]] = None,
        error: Optional[LlmError] = None,
        usage: Optional[dict] = None,
    ):
        self.model = model
        self.responder = responder or cite_first_sources
        self.error = error
        self.usage = usage or {"total_tokens": 321}
        self.calls: List[List[LLMMessage]] = []

    async def generate(self, messages: Iterable[LLMMessage], **kwargs) -> LLMResponse:
        messages = list(messages)
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.responder(messages), usage=self.usage, finish_reason="stop")


class FakeEmbedder:
    """Hashed bag-of-words embedding; identical texts embed identically."""

    def __init__(self, dim: int = 256, error: Optional[Exception] = None):
        self.dim = dim
        self.error = error
        self.calls: List[str] = []

    async def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        vector = np.zeros(self.dim, dtype=np.float32)
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % self.dim
            vector[bucket] += 1.0
        norm = np.linalg.norm(vector)
        return vector / norm if norm else vector


class MutableClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_result(url: str, score: float = 0.8, provider: str = "tavily", title: Optional[str] = None) -> SearchResult:
    return SearchResult(
        url=url,
        title=title or f"Article at {extract_domain(url)}",
        snippet=f"Snippet about the incident from {extract_domain(url)}.",
        score=score,
        provider=provider,
    )


def make_source(
    url: str,
    content: str = "Some content about the topic.",
    relevance: float = 0.8,
    word_count: int = 0,
    fetched: bool = True,
) -> Source:
    return Source(
        url=url,
        title=f"Title {extract_domain(url)}",
        content=content,
        relevance_score=relevance,
        metadata=SourceMetadata(
            domain=extract_domain(url),
            word_count=word_count or len(content.split()),
            provider="tavily",
            fetched=fetched,
        ),
    )


def build_test_registry(
    search: Sequence[FakeSearchProvider] = (),
    llms: Sequence[FakeLLMClient] = (),
    embedder: Optional[FakeEmbedder] = None,
):
    builder = RegistryBuilder()
    for provider in search:
        builder.register(provider.provider_id, Capability.SEARCH, provider)
    for client in llms:
        builder.register(client.model, Capability.LLM, SynthesisProvider(client, model_id=client.model))
    if embedder is not None:
        builder.register("fake-embedder", Capability.EMBEDDING, embedder)
    return builder.build()


CROWDSTRIKE_RESULTS = {
    "tavily": [
        make_result("https://www.reuters.com/technology/crowdstrike-outage", 0.95, "tavily"),
        make_result("https://en.wikipedia.org/wiki/2024_CrowdStrike_incident", 0.9, "tavily"),
        make_result("https://www.crowdstrike.com/blog/falcon-update-rir/", 0.85, "tavily"),
    ],
    "brave": [
        make_result("https://reuters.com/technology/crowdstrike-outage/?utm_source=x", 0.7, "brave"),
        make_result("https://arstechnica.com/crowdstrike-bsod", 0.8, "brave"),
        make_result("https://www.theverge.com/crowdstrike-windows-crash", 0.75, "brave"),
    ],
}


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def crowdstrike_providers() -> List[FakeSearchProvider]:
    return [
        FakeSearchProvider("tavily", CROWDSTRIKE_RESULTS["tavily"]),
        FakeSearchProvider("brave", CROWDSTRIKE_RESULTS["brave"]),
    ]


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll a synchronous predicate; used with the threaded TestClient."""

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()

