from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from .errors import LlmError, ProviderError
from .llm import LLMClient
from .prompts import build_synthesis_messages, estimate_tokens, parse_synthesis_output
from .rank import domain_authority
from .registry import Capability, ProviderRegistry
from .types import Answer, Citation, Confidence, Source, SynthesisMetadata
from .validate import QuoteMode, QuotePolicy, validate_citations

logger = logging.getLogger(__name__)

NO_SOURCES_SUMMARY = "No sources were found that could answer this question."


class SynthesisProvider:
    """Turns sources into a structured :class:`Answer` with one chat model."""

    def __init__(
        self,
        client: LLMClient,
        model_id: Optional[str] = None,
        max_tokens: int = 1500,
        temperature: float = 0.1,
    ):
        self.client = client
        self.model_id = model_id or getattr(client, "model", "llm")
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def synthesize(self, query: str, sources: Sequence[Source], max_source_chars: int = 6000) -> Answer:
        messages = build_synthesis_messages(query, sources, max_source_chars)
        started = time.perf_counter()
        response = await self.client.generate(
            messages,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            response_format={"type": "json_object"},
        )
        try:
            answer = parse_synthesis_output(response.content)
        except (json.JSONDecodeError, ValueError) as exc:
            raise ProviderError(f"unparseable synthesis output from {self.model_id}") from exc
        answer.synthesis_metadata = SynthesisMetadata(
            model=getattr(self.client, "model", self.model_id),
            tokens_used=int((response.usage or {}).get("total_tokens") or 0),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return answer


@dataclass
class ConfidencePolicy:
    """Derives the final confidence; the model's self-report is only ever lowered."""

    min_corroborating_domains: int = 2
    min_authority: float = 0.0
    authority: Callable[[str], float] = field(default=domain_authority)

    def apply(
        self, reported: Confidence, citations: Sequence[Citation], sources: Sequence[Source]
    ) -> Tuple[Confidence, List[str]]:
        if not citations:
            return Confidence.INSUFFICIENT, ["No claim could be tied to a verified source."]
        by_id = {source.id: source for source in sources}
        domains = {by_id[c.source_id].domain for c in citations if c.source_id in by_id}
        confidence = reported
        notes: List[str] = []
        if len(domains) < self.min_corroborating_domains:
            capped = confidence.cap(Confidence.MEDIUM)
            if capped != confidence:
                notes.append("Cited claims are backed by a single source domain.")
            confidence = capped
        if self.min_authority > 0 and domains:
            average = sum(self.authority(domain) for domain in domains) / len(domains)
            if average < self.min_authority:
                capped = confidence.cap(Confidence.LOW)
                if capped != confidence:
                    notes.append("Cited sources have low domain authority.")
                confidence = capped
        return confidence, notes


@dataclass
class SynthesizerConfig:
    context_budget_tokens: int = 24_000
    max_source_chars: int = 6000
    quote_mode: str = "exact"
    fuzzy_threshold: float = 0.9
    min_corroborating_domains: int = 2
    min_authority: float = 0.0


class SynthesisEngine:
    """Runs synthesis over the LLM fallback chain and validates the result."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config: Optional[SynthesizerConfig] = None,
        quote_policy: Optional[QuotePolicy] = None,
        confidence_policy: Optional[ConfidencePolicy] = None,
    ):
        self.registry = registry
        self.config = config or SynthesizerConfig()
        self.quote_policy = quote_policy or QuotePolicy(
            mode=QuoteMode(self.config.quote_mode), fuzzy_threshold=self.config.fuzzy_threshold
        )
        self.confidence_policy = confidence_policy or ConfidencePolicy(
            min_corroborating_domains=self.config.min_corroborating_domains,
            min_authority=self.config.min_authority,
        )

    async def synthesize(self, query: str, sources: Sequence[Source]) -> Answer:
        if not sources:
            logger.info("No sources for %r; skipping LLM call.", query)
            return Answer(
                summary=NO_SOURCES_SUMMARY,
                confidence=Confidence.INSUFFICIENT,
                limitations=["The search returned no usable sources."],
            )

        chain = self.registry.fallback_chain(Capability.LLM)
        context = self.fit_to_budget(query, sources)
        answer, fallback_used = await self._generate(chain, query, context)

        citations, report = validate_citations(answer.citations, context, self.quote_policy)
        if report.dropped:
            logger.info("Citation validation kept %s of %s", report.kept, report.kept + report.dropped)
        confidence, notes = self.confidence_policy.apply(answer.confidence, citations, context)

        answer.citations = citations
        answer.confidence = confidence
        answer.limitations = list(answer.limitations) + notes
        answer.synthesis_metadata.fallback_used = fallback_used
        return answer

    def fit_to_budget(self, query: str, sources: Sequence[Source]) -> List[Source]:
        """Drop the lowest-ranked sources until the prompt fits the context budget."""

        kept = list(sources)
        while len(kept) > 1:
            messages = build_synthesis_messages(query, kept, self.config.max_source_chars)
            if sum(estimate_tokens(message.content) for message in messages) <= self.config.context_budget_tokens:
                break
            dropped = kept.pop()
            logger.debug("Context budget exceeded; dropping source %s", dropped.id)
        return kept

    async def _generate(self, chain: Sequence[str], query: str, sources: Sequence[Source]) -> Tuple[Answer, bool]:
        primary_id = chain[0]
        try:
            return await self._call(primary_id, query, sources), False
        except LlmError as exc:
            if not exc.retryable or len(chain) < 2:
                raise
            fallback_id = chain[1]
            logger.warning("LLM %s failed (%s); falling back to %s", primary_id, exc.code, fallback_id)
        return await self._call(fallback_id, query, sources), True

    async def _call(self, provider_id: str, query: str, sources: Sequence[Source]) -> Answer:
        provider = self.registry.resolve(provider_id)
        return await provider.synthesize(query, sources, max_source_chars=self.config.max_source_chars)
