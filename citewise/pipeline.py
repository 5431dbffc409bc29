"""Research job orchestration: plan, search, synthesize, persist, stream."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union

from .cache import CacheConfig, CacheHit, SemanticCache
from .config import cache_directory, section
from .embed import Embedder
from .errors import CitewiseError, PipelineTimeout, StoreError
from .events import ProgressBroadcaster, Subscription
from .executor import ExecutorConfig, SearchExecutor
from .fetch import FetchCache, Fetcher
from .planner import PlannerConfig, QueryPlanner
from .rank import RankingPolicy
from .registry import Capability, ProviderRegistry, RegistryHolder, build_registry
from .store import Store, build_store
from .synth import SynthesisEngine, SynthesizerConfig
from .types import (
    Answer,
    EventType,
    Job,
    JobError,
    JobMetadata,
    JobStatus,
    Source,
    utcnow,
)

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_STAGE_MESSAGES = {
    JobStatus.PLANNING: ("Analyzing query", 0.1),
    JobStatus.SEARCHING: ("Searching sources", 0.3),
    JobStatus.SYNTHESIZING: ("Synthesizing answer", 0.7),
    JobStatus.COMPLETED: ("Research complete", 1.0),
    JobStatus.FAILED: ("Research failed", 1.0),
}


def _from_section(cls: Type[_T], data: Dict[str, Any]) -> _T:
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(sorted(unknown)))
    return cls(**{key: value for key, value in data.items() if key in known})


@dataclass
class PipelineConfig:
    job_timeout: float = 60.0
    event_queue_size: int = 64
    retained_channels: int = 1000
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    synthesizer: SynthesizerConfig = field(default_factory=SynthesizerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    ranking: RankingPolicy = field(default_factory=RankingPolicy)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PipelineConfig":
        """Build from the ``pipeline:`` section of the app config."""

        data = dict(data or {})
        return cls(
            job_timeout=float(data.get("job_timeout", 60.0)),
            event_queue_size=int(data.get("event_queue_size", 64)),
            retained_channels=int(data.get("retained_channels", 1000)),
            planner=_from_section(PlannerConfig, data.get("planner") or {}),
            executor=_from_section(ExecutorConfig, data.get("executor") or {}),
            synthesizer=_from_section(SynthesizerConfig, data.get("synthesizer") or {}),
            cache=_from_section(CacheConfig, data.get("cache") or {}),
            ranking=_from_section(RankingPolicy, data.get("ranking") or {}),
        )


class ResearchPipeline:
    """Owns job lifecycles; each submitted job runs as its own asyncio task."""

    def __init__(
        self,
        registry: Union[ProviderRegistry, RegistryHolder],
        store: Store,
        config: Optional[PipelineConfig] = None,
        fetcher: Optional[Fetcher] = None,
        embedder: Optional[Embedder] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry_holder = registry if isinstance(registry, RegistryHolder) else RegistryHolder(registry)
        self.store = store
        self.config = config or PipelineConfig()
        self.fetcher = fetcher
        self.embedder = embedder
        self.clock = clock
        self._channels: "OrderedDict[str, ProgressBroadcaster]" = OrderedDict()
        self._tasks: Dict[str, "asyncio.Task[Job]"] = {}

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ResearchPipeline":
        pipeline_config = PipelineConfig.from_dict(config.get("pipeline"))
        limits = section(config, "limits")
        registry = build_registry(config, http_timeout=limits.get("request_timeout_seconds"))
        fetch_cfg = section(config, "fetch")
        cache = FetchCache(cache_directory(config)) if fetch_cfg.get("cache", True) else None
        fetcher = Fetcher(
            user_agent=fetch_cfg.get("user_agent", "citewise/0.1"),
            timeout=float(fetch_cfg.get("timeout", pipeline_config.executor.fetch_timeout)),
            cache=cache,
        )
        store = build_store(section(config, "store"))
        return cls(registry, store, config=pipeline_config, fetcher=fetcher)

    @property
    def registry(self) -> ProviderRegistry:
        return self.registry_holder.current

    # --- public API --------------------------------------------------------

    async def submit(self, query: str) -> Job:
        """Validate, persist and start a job; returns without waiting for it."""

        job = Job.create(query)
        await self.store.create_job(job)
        self._open_channel(job.id)
        task = asyncio.create_task(self.run(job), name=f"research-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))
        logger.info("Submitted job %s: %s", job.id, query)
        return job.model_copy(deep=True)

    async def run(self, job: Job) -> Job:
        channel = self._channels.get(job.id) or self._open_channel(job.id)
        started = time.perf_counter()
        try:
            await asyncio.wait_for(self._drive(job, channel, started), timeout=self.config.job_timeout)
        except asyncio.TimeoutError:
            logger.warning("Job %s timed out after %ss", job.id, self.config.job_timeout)
            await self._fail(job, channel, PipelineTimeout(self.config.job_timeout).to_job_error(), started)
        except CitewiseError as exc:
            logger.warning("Job %s failed: [%s] %s", job.id, exc.code, exc.message)
            await self._fail(job, channel, exc.to_job_error(), started)
        except Exception as exc:
            logger.exception("Job %s crashed", job.id)
            await self._fail(job, channel, JobError(code="internal_error", message=str(exc) or "internal error"), started)
        finally:
            channel.close()
        return job

    async def wait(self, job_id: str) -> Job:
        """Block until a running job finishes and return its stored state."""

        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.store.get_job(job_id)

    async def subscribe(self, job_id: str) -> Subscription:
        """Progress events for a job; finished jobs replay their final events."""

        channel = self._channels.get(job_id)
        if channel is not None:
            return channel.subscribe()
        job = await self.store.get_job(job_id)
        return self._replay_channel(job).subscribe()

    async def get_job(self, job_id: str) -> Job:
        return await self.store.get_job(job_id)

    async def get_sources(self, job_id: str) -> List[Source]:
        return await self.store.get_sources(job_id)

    async def list_jobs(self, limit: int = 20, offset: int = 0) -> List[Job]:
        return await self.store.list_jobs(limit=limit, offset=offset)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # --- stages ------------------------------------------------------------

    async def _drive(self, job: Job, channel: ProgressBroadcaster, started: float) -> None:
        registry = self.registry
        cache = SemanticCache(self.store, self._embedder(registry), self.config.cache, clock=self.clock)
        planner = QueryPlanner(registry, self.config.planner, cache=cache, classifier=self._classifier(registry))
        executor = SearchExecutor(registry, self.config.executor, fetcher=self.fetcher, ranking=self.config.ranking)
        synthesizer = SynthesisEngine(registry, self.config.synthesizer)

        await self._advance(job, channel, JobStatus.PLANNING)
        outcome = await planner.plan(job.query)
        if isinstance(outcome, CacheHit):
            await self._complete_from_cache(job, channel, outcome, started)
            return

        job.set_intent(outcome.intent)
        await self._advance(
            job,
            channel,
            JobStatus.SEARCHING,
            message=f"Searching {len(outcome.plan.providers)} provider(s) with {len(outcome.plan.queries)} quer(ies)",
        )

        found: List[Source] = []

        def on_source(source: Source) -> None:
            found.append(source)
            channel.publish(
                EventType.SOURCE,
                {"id": source.id, "url": source.url, "title": source.title, "relevance": source.relevance_score},
            )

        collection = await executor.execute(outcome.plan, on_source=on_source)
        await self._advance(
            job,
            channel,
            JobStatus.SYNTHESIZING,
            message=f"Synthesizing answer from {len(collection)} source(s)",
            sources_count=len(found),
        )
        answer = await synthesizer.synthesize(job.query, collection.sources)
        metadata = JobMetadata(
            duration_ms=self._elapsed_ms(started),
            sources_considered=collection.search_metadata.total_results,
            cached=False,
            model=answer.synthesis_metadata.model or None,
        )
        await self._finish(job, channel, answer, metadata, collection.sources)
        await cache.remember(job.id, job.query)

    async def _complete_from_cache(
        self, job: Job, channel: ProgressBroadcaster, hit: CacheHit, started: float
    ) -> None:
        metadata = JobMetadata(
            duration_ms=self._elapsed_ms(started),
            sources_considered=len(hit.sources),
            cached=True,
            cached_from=hit.job_id,
            model=hit.answer.synthesis_metadata.model or None,
        )
        answer = hit.answer.model_copy(deep=True)
        answer.citations = list(hit.citations) or answer.citations
        for source in hit.sources:
            channel.publish(
                EventType.SOURCE,
                {"id": source.id, "url": source.url, "title": source.title, "relevance": source.relevance_score},
            )
        await self._finish(job, channel, answer, metadata, hit.sources, message="Answer served from cache")

    async def _finish(
        self,
        job: Job,
        channel: ProgressBroadcaster,
        answer: Answer,
        metadata: JobMetadata,
        sources: List[Source],
        message: Optional[str] = None,
    ) -> None:
        # ``job`` stays non-terminal until the store accepts the completion, so a
        # failed write still lets ``_fail`` record the job as failed.
        completed = job.model_copy(deep=True)
        completed.complete(answer, metadata)
        self._publish_status(channel, JobStatus.COMPLETED, message=message, sources_count=len(sources))
        await self.store.complete_job(completed, sources)
        for name in ("status", "answer", "citations", "metadata", "updated_at", "completed_at"):
            setattr(job, name, getattr(completed, name))
        channel.publish(EventType.ANSWER, {"summary": answer.summary, "confidence": answer.confidence.value})
        channel.publish(EventType.COMPLETE, {"job_id": job.id, "duration_ms": metadata.duration_ms})
        logger.info(
            "Job %s completed in %sms (confidence=%s, cached=%s)",
            job.id,
            metadata.duration_ms,
            answer.confidence.value,
            metadata.cached,
        )

    async def _advance(
        self,
        job: Job,
        channel: ProgressBroadcaster,
        status: JobStatus,
        message: Optional[str] = None,
        sources_count: Optional[int] = None,
    ) -> None:
        job.transition_to(status)
        self._publish_status(channel, status, message=message, sources_count=sources_count)
        await self.store.update_job(job)

    async def _fail(self, job: Job, channel: ProgressBroadcaster, error: JobError, started: float) -> None:
        if job.status.is_terminal:
            return
        job.fail(error)
        job.metadata.duration_ms = self._elapsed_ms(started)
        self._publish_status(channel, JobStatus.FAILED, message=error.message)
        channel.publish(EventType.ERROR, {"code": error.code, "message": error.message})
        try:
            await self.store.update_job(job)
        except StoreError as exc:
            logger.error("Could not persist failure of job %s: %s", job.id, exc)

    # --- helpers -----------------------------------------------------------

    def _publish_status(
        self,
        channel: ProgressBroadcaster,
        status: JobStatus,
        message: Optional[str] = None,
        sources_count: Optional[int] = None,
    ) -> None:
        default_message, progress = _STAGE_MESSAGES[status]
        data: Dict[str, Any] = {"stage": status.value, "message": message or default_message, "progress": progress}
        if sources_count is not None:
            data["sources_count"] = sources_count
        channel.publish(EventType.STATUS, data)

    def _open_channel(self, job_id: str) -> ProgressBroadcaster:
        channel = ProgressBroadcaster(job_id, queue_size=self.config.event_queue_size)
        self._channels[job_id] = channel
        while len(self._channels) > self.config.retained_channels:
            oldest_id, oldest = next(iter(self._channels.items()))
            if not oldest.closed:
                break
            del self._channels[oldest_id]
        return channel

    def _replay_channel(self, job: Job) -> ProgressBroadcaster:
        channel = ProgressBroadcaster(job.id, queue_size=self.config.event_queue_size)
        self._publish_status(channel, job.status)
        if job.status == JobStatus.COMPLETED and job.answer is not None:
            channel.publish(EventType.ANSWER, {"summary": job.answer.summary, "confidence": job.answer.confidence.value})
            channel.publish(EventType.COMPLETE, {"job_id": job.id, "duration_ms": job.metadata.duration_ms})
        elif job.status == JobStatus.FAILED and job.error is not None:
            channel.publish(EventType.ERROR, {"code": job.error.code, "message": job.error.message})
        channel.close()
        return channel

    def _embedder(self, registry: ProviderRegistry) -> Optional[Embedder]:
        if self.embedder is not None:
            return self.embedder
        if registry.has(Capability.EMBEDDING):
            return registry.primary(Capability.EMBEDDING)
        return None

    def _classifier(self, registry: ProviderRegistry) -> Any:
        if not self.config.planner.use_llm_classifier or not registry.has(Capability.LLM):
            return None
        return getattr(registry.primary(Capability.LLM), "client", None)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)
