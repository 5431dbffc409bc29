from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .embed import Embedder, normalize_query
from .store import Store
from .types import Answer, Citation, JobStatus, Source, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CacheConfig:
    enabled: bool = True
    similarity_threshold: float = 0.92
    ttl_seconds: float = 24 * 3600

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.ttl_seconds)


@dataclass
class CacheHit:
    job_id: str
    answer: Answer
    citations: List[Citation] = field(default_factory=list)
    sources: List[Source] = field(default_factory=list)


class SemanticCache:
    """Vector-similarity lookup over previously completed jobs."""

    def __init__(
        self,
        store: Store,
        embedder: Optional[Embedder],
        config: Optional[CacheConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.embedder = embedder
        self.config = config or CacheConfig()
        self.clock = clock

    @property
    def active(self) -> bool:
        return self.config.enabled and self.embedder is not None

    async def lookup(self, query: str) -> Optional[CacheHit]:
        """Return a fresh, similar completed job; any failure counts as a miss."""

        if not self.active:
            return None
        now = self.clock()
        try:
            embedding = await self.embedder.embed(normalize_query(query))
            job_id = await self.store.find_similar(
                embedding, self.config.similarity_threshold, since=now - self.config.ttl
            )
            if job_id is None:
                return None
            job = await self.store.get_job(job_id)
            if job.status != JobStatus.COMPLETED or job.answer is None:
                return None
            finished = job.completed_at or job.created_at
            if now - finished >= self.config.ttl:
                logger.debug("Cache candidate %s expired", job_id)
                return None
            sources = await self.store.get_sources(job_id)
        except Exception as exc:
            logger.warning("Semantic cache lookup failed; treating as miss: %s", exc)
            return None
        logger.info("Semantic cache hit for %r -> %s", query, job_id)
        return CacheHit(job_id=job_id, answer=job.answer, citations=list(job.citations), sources=sources)

    async def remember(self, job_id: str, query: str) -> None:
        """Register a completed job's query embedding for future lookups."""

        if not self.active:
            return
        try:
            embedding = await self.embedder.embed(normalize_query(query))
            await self.store.store_embedding(job_id, embedding)
        except Exception as exc:
            logger.warning("Failed to store query embedding for %s: %s", job_id, exc)
