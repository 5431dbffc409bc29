"""Concurrent execution of a search plan into a ranked source collection."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from .errors import AllProvidersFailed, CitewiseError, SearchError, SearchProviderError, SearchTimeout
from .fetch import Fetcher
from .parse import ParsedPage, clean_content
from .rank import RankingPolicy, dedupe_results
from .registry import ProviderRegistry
from .types import (
    SearchMetadata,
    SearchPlan,
    SearchResult,
    SearchTask,
    Source,
    SourceCollection,
    SourceMetadata,
    extract_domain,
)

logger = logging.getLogger(__name__)

SourceCallback = Callable[[Source], None]
_Outcome = Tuple[SearchTask, Union[List[SearchResult], SearchError]]


@dataclass
class ExecutorConfig:
    max_concurrency: int = 8
    results_per_query: int = 10
    fetch_content: bool = True
    fetch_concurrency: int = 4
    fetch_timeout: float = 8.0
    # Candidates fetched per kept source slot after dedup.
    fetch_multiplier: int = 2


class SearchExecutor:
    def __init__(
        self,
        registry: ProviderRegistry,
        config: Optional[ExecutorConfig] = None,
        fetcher: Optional[Fetcher] = None,
        ranking: Optional[RankingPolicy] = None,
    ):
        self.registry = registry
        self.config = config or ExecutorConfig()
        self.fetcher = fetcher
        self.ranking = ranking or RankingPolicy()

    async def execute(self, plan: SearchPlan, on_source: Optional[SourceCallback] = None) -> SourceCollection:
        started = time.perf_counter()
        if not plan.tasks:
            return SourceCollection()
        # One deadline for the whole stage, fetching included.
        deadline = started + plan.timeout

        outcomes = await self._run_searches(plan)

        results: List[SearchResult] = []
        failures: Dict[str, List[SearchError]] = {}
        succeeded: List[str] = []
        for task, outcome in outcomes:
            if isinstance(outcome, SearchError):
                failures.setdefault(task.provider, []).append(outcome)
                continue
            if task.provider not in succeeded:
                succeeded.append(task.provider)
            results.extend(outcome)

        if not succeeded:
            raise AllProvidersFailed(failures)
        for provider, errors in failures.items():
            if provider not in succeeded:
                logger.warning("Search provider %s failed: %s", provider, "; ".join(e.message for e in errors))

        unique = dedupe_results(results)
        unique.sort(key=lambda result: result.score, reverse=True)
        candidates = unique[: plan.max_sources * self.config.fetch_multiplier]
        sources = await self._materialize(candidates, timeout=max(deadline - time.perf_counter(), 0.0))
        kept = self.ranking.rank(sources, limit=plan.max_sources)

        for source in kept:
            if on_source is not None:
                on_source(source)

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Executed %s search tasks: %s raw, %s unique, %s kept in %sms",
            len(plan.tasks),
            len(results),
            len(unique),
            len(kept),
            duration_ms,
        )
        return SourceCollection(
            sources=kept,
            search_metadata=SearchMetadata(
                queries_executed=[query.text for query in plan.queries],
                providers_used=succeeded,
                providers_failed=[provider for provider in failures if provider not in succeeded],
                total_results=len(results),
                duration_ms=duration_ms,
            ),
        )

    async def _run_searches(self, plan: SearchPlan) -> List[_Outcome]:
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def run_one(task: SearchTask) -> _Outcome:
            try:
                provider = self.registry.resolve(task.provider)
            except CitewiseError as exc:
                return task, SearchProviderError(exc.message, provider=task.provider)
            async with semaphore:
                try:
                    found = await asyncio.wait_for(
                        provider.search(task.query, top_k=self.config.results_per_query),
                        timeout=plan.per_call_timeout,
                    )
                except asyncio.TimeoutError:
                    return task, SearchTimeout(
                        f"{task.provider} search timeout after {plan.per_call_timeout:g}s", provider=task.provider
                    )
                except SearchError as exc:
                    return task, exc
                except Exception as exc:
                    logger.warning("Search provider %s raised %s: %s", task.provider, exc.__class__.__name__, exc)
                    return task, SearchProviderError(str(exc) or exc.__class__.__name__, provider=task.provider)
            return task, list(found)

        pending_map = {asyncio.ensure_future(run_one(task)): task for task in plan.tasks}
        try:
            done, pending = await asyncio.wait(pending_map, timeout=plan.timeout)
        except asyncio.CancelledError:
            for future in pending_map:
                future.cancel()
            raise
        for future in pending:
            future.cancel()

        outcomes: List[_Outcome] = []
        for future, task in pending_map.items():
            if future in done:
                outcomes.append(future.result())
            else:
                outcomes.append(
                    (task, SearchTimeout(f"search plan deadline of {plan.timeout:g}s exceeded", provider=task.provider))
                )
        return outcomes

    async def _materialize(self, results: List[SearchResult], timeout: Optional[float] = None) -> List[Source]:
        """Fetch full pages for ``results``; anything unfinished at ``timeout`` keeps its snippet."""

        if self.fetcher is None or not self.config.fetch_content or not results:
            return [self._to_source(result, None) for result in results]

        semaphore = asyncio.Semaphore(self.config.fetch_concurrency)

        async def load(result: SearchResult) -> Source:
            async with semaphore:
                page = await self._fetch_page(result.url)
            return self._to_source(result, page)

        futures = [asyncio.ensure_future(load(result)) for result in results]
        try:
            done, pending = await asyncio.wait(futures, timeout=timeout)
        except asyncio.CancelledError:
            for future in futures:
                future.cancel()
            raise
        if pending:
            logger.info("Stage deadline reached with %s fetches pending; keeping snippets.", len(pending))
            for future in pending:
                future.cancel()
        return [
            future.result() if future in done else self._to_source(result, None)
            for future, result in zip(futures, results)
        ]

    async def _fetch_page(self, url: str) -> Optional[ParsedPage]:
        try:
            fetched = await asyncio.wait_for(self.fetcher.fetch(url), timeout=self.config.fetch_timeout)
        except asyncio.TimeoutError:
            logger.info("Fetch timed out for %s; keeping snippet.", url)
            return None
        if fetched is None:
            return None
        try:
            return await asyncio.to_thread(clean_content, fetched)
        except Exception as exc:  # parser failures fall back to the snippet
            logger.warning("Parse failed for %s: %s", url, exc)
            return None

    @staticmethod
    def _to_source(result: SearchResult, page: Optional[ParsedPage]) -> Source:
        if page is not None:
            content = page.text
            title = result.title if result.title and result.title != "Untitled" else (page.title or result.title)
        else:
            content = f"{result.title}\n{result.snippet}".strip()
            title = result.title
        return Source(
            url=result.url,
            title=title,
            content=content,
            relevance_score=result.score,
            metadata=SourceMetadata(
                domain=extract_domain(result.url),
                published_at=result.published_at or (page.published_at if page else None),
                author=page.author if page else None,
                word_count=len(content.split()),
                provider=result.provider,
                fetched=page is not None,
            ),
        )
