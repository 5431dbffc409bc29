from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

from .types import SearchResult, Source

logger = logging.getLogger(__name__)

# Hand-curated authority priors; unknown domains get ``default_authority``.
DOMAIN_AUTHORITY: Dict[str, float] = {
    "wikipedia.org": 0.85,
    "reuters.com": 0.9,
    "apnews.com": 0.9,
    "bbc.co.uk": 0.85,
    "bbc.com": 0.85,
    "nytimes.com": 0.85,
    "theguardian.com": 0.8,
    "arstechnica.com": 0.8,
    "theverge.com": 0.75,
    "techcrunch.com": 0.75,
    "nature.com": 0.95,
    "arxiv.org": 0.85,
    "github.com": 0.7,
    "stackoverflow.com": 0.7,
    "medium.com": 0.45,
    "reddit.com": 0.4,
    "quora.com": 0.3,
}

_AUTHORITY_SUFFIXES = {".gov": 0.95, ".edu": 0.9, ".int": 0.85}


def normalize_url(url: str) -> str:
    """Canonical form used for dedup: no query/fragment, lowercase host, no ``www.``."""

    parts = urlsplit(url.strip())
    host = parts.netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    path = parts.path.rstrip("/")
    scheme = (parts.scheme or "https").lower()
    if scheme == "http":
        scheme = "https"
    return urlunsplit((scheme, host, path, "", ""))


def dedupe_results(results: Iterable[SearchResult]) -> List[SearchResult]:
    """Keep the highest-scored result per normalized URL, preserving first-seen order."""

    best: Dict[str, SearchResult] = {}
    for result in results:
        key = normalize_url(result.url)
        current = best.get(key)
        if current is None or result.score > current.score:
            best[key] = result
    return list(best.values())


def domain_authority(domain: str, default: float = 0.5) -> float:
    domain = domain.lower()
    for known, score in DOMAIN_AUTHORITY.items():
        if domain == known or domain.endswith("." + known):
            return score
    for suffix, score in _AUTHORITY_SUFFIXES.items():
        if domain.endswith(suffix):
            return score
    return default


def recency_score(published_at: Optional[datetime], now: Optional[datetime] = None, half_life_days: float = 30.0) -> float:
    if published_at is None:
        return 0.5
    now = now or datetime.now(timezone.utc)
    if published_at.tzinfo is None:
        published_at = published_at.replace(tzinfo=timezone.utc)
    age_days = max((now - published_at).total_seconds() / 86400.0, 0.0)
    return math.pow(0.5, age_days / half_life_days)


def quality_score(source: Source, target_words: int = 800) -> float:
    words = source.metadata.word_count or len(source.content.split())
    score = min(words / target_words, 1.0)
    if not source.metadata.fetched:
        score *= 0.5
    return score


@dataclass
class RankingPolicy:
    relevance_weight: float = 0.5
    authority_weight: float = 0.2
    recency_weight: float = 0.15
    quality_weight: float = 0.15
    max_per_domain: int = 3
    default_authority: float = 0.5
    recency_half_life_days: float = 30.0
    authority_overrides: Dict[str, float] = field(default_factory=dict)

    def authority(self, domain: str) -> float:
        if domain in self.authority_overrides:
            return self.authority_overrides[domain]
        return domain_authority(domain, self.default_authority)

    def score(self, source: Source, now: Optional[datetime] = None) -> float:
        total_weight = self.relevance_weight + self.authority_weight + self.recency_weight + self.quality_weight
        composite = (
            self.relevance_weight * source.relevance_score
            + self.authority_weight * self.authority(source.domain)
            + self.recency_weight * recency_score(source.metadata.published_at, now, self.recency_half_life_days)
            + self.quality_weight * quality_score(source)
        )
        return composite / total_weight if total_weight else 0.0

    def rank(self, sources: Sequence[Source], limit: int = 10, now: Optional[datetime] = None) -> List[Source]:
        """Order by composite score and keep ``limit`` with at most ``max_per_domain`` per domain."""

        scored = sorted(sources, key=lambda source: self.score(source, now), reverse=True)
        per_domain: Dict[str, int] = {}
        kept: List[Source] = []
        for source in scored:
            count = per_domain.get(source.domain, 0)
            if count >= self.max_per_domain:
                logger.debug("Domain cap reached for %s; dropping %s", source.domain, source.url)
                continue
            per_domain[source.domain] = count + 1
            kept.append(source)
            if len(kept) >= limit:
                break
        return kept
