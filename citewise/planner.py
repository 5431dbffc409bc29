from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from .cache import CacheHit, SemanticCache
from .errors import LlmError
from .llm import LLMClient
from .prompts import build_classifier_messages, extract_json_object
from .registry import Capability, ProviderRegistry
from .types import (
    ContentType,
    Intent,
    QuestionType,
    Recency,
    SearchFilters,
    SearchPlan,
    SearchQuery,
    SearchTask,
    TimeConstraint,
    utcnow,
)

logger = logging.getLogger(__name__)


_COMPARISON_SPLIT = re.compile(r"\s+(?:vs\.?|versus|compared (?:to|with)|or)\s+", re.IGNORECASE)
_QUOTED = re.compile(r"\"([^\"]+)\"|'([^']+)'")
_CAPITALIZED = re.compile(r"\b[A-Z][\w\-]*(?:\s+[A-Z][\w\-]*)*")
_YEAR = re.compile(r"\b(19\d{2}|20\d{2})\b")

_TYPE_KEYWORDS = (
    (QuestionType.COMPARISON, (" vs ", " vs. ", " versus ", "compare", "difference between", "differences between")),
    (QuestionType.HOW_TO, ("how to ", "how do i ", "how can i ", "steps to ", "guide to ", "tutorial")),
    (QuestionType.CURRENT_EVENT, ("latest", "today", "this week", "breaking", "right now", "currently", "news")),
    (QuestionType.OPINION, ("should i", "is it worth", "best ", "recommend", "opinion", "better")),
    (QuestionType.EXPLANATION, ("why ", "caused", "cause of", "explain", "how does ", "how do ", "what is the reason")),
)

_RECENT_WORDS = ("latest", "today", "this week", "this month", "recent", "recently", "now", "current")
_QUESTION_WORDS = {"What", "Why", "How", "When", "Where", "Who", "Which", "Is", "Are", "Should", "Can", "Does", "Do"}

_MULTI_PROVIDER_TYPES = {
    QuestionType.COMPARISON,
    QuestionType.OPINION,
    QuestionType.CURRENT_EVENT,
    QuestionType.EXPLANATION,
}


@dataclass
class PlannerConfig:
    max_variants: int = 3
    max_providers: int = 3
    ambiguous_word_count: int = 4
    use_llm_classifier: bool = False
    max_sources: int = 10
    search_timeout: float = 30.0
    per_call_timeout: float = 10.0


@dataclass
class Planned:
    intent: Intent
    plan: SearchPlan


PlanOutcome = Union[Planned, CacheHit]


def classify_question(query: str) -> QuestionType:
    lowered = f" {query.lower().strip()} "
    for question_type, keywords in _TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return question_type
    return QuestionType.FACTUAL


def extract_entities(query: str) -> List[str]:
    entities: List[str] = []
    for match in _QUOTED.finditer(query):
        entities.append(match.group(1) or match.group(2))
    unquoted = _QUOTED.sub(" ", query)
    for match in _CAPITALIZED.finditer(unquoted):
        words = [word for word in match.group(0).split() if word not in _QUESTION_WORDS]
        if words:
            entities.append(" ".join(words))
    entities.extend(_YEAR.findall(query))
    return list(dict.fromkeys(entity.strip() for entity in entities if entity.strip()))


def derive_time_constraint(query: str, current_year: Optional[int] = None) -> Optional[TimeConstraint]:
    lowered = query.lower()
    if any(re.search(rf"\b{re.escape(word)}\b", lowered) for word in _RECENT_WORDS):
        return TimeConstraint.RECENT
    years = [int(year) for year in _YEAR.findall(query)]
    if years:
        current_year = current_year or utcnow().year
        return TimeConstraint.RECENT if max(years) >= current_year else TimeConstraint.HISTORICAL
    return None


def _core_topic(query: str) -> str:
    text = query.strip().rstrip("?!.")
    text = re.sub(r"^(how (to|do i|can i|does|do)|what is|what are|why (is|are|does|do|did)?)\s+", "", text, flags=re.IGNORECASE)
    return text.strip() or query.strip()


def generate_variants(query: str, intent: Intent, limit: int = 3) -> List[SearchQuery]:
    """Type-appropriate search query variants, raw query first."""

    text = query.strip()
    core = _core_topic(text)
    filters = SearchFilters()
    candidates: List[Tuple[str, str]] = [(text, "original query")]

    if intent.question_type == QuestionType.CURRENT_EVENT:
        filters = SearchFilters(recency=Recency.WEEK, content_type=ContentType.NEWS)
        if intent.entities:
            candidates.append((f"{' '.join(intent.entities[:3])} latest news", "news angle"))
    elif intent.question_type == QuestionType.COMPARISON:
        sides = [side.strip(" ?.") for side in _COMPARISON_SPLIT.split(core) if side.strip(" ?.")]
        if len(sides) >= 2:
            left, right = sides[0], sides[1]
            candidates = [(f"{left} vs {right}", "head to head"), (left, "first side"), (right, "second side")]
    elif intent.question_type == QuestionType.HOW_TO:
        candidates.append((f"{core} guide", "guide variant"))
    elif intent.question_type == QuestionType.EXPLANATION:
        candidates.append((f"{core} explained", "explainer variant"))
    elif intent.question_type == QuestionType.OPINION:
        candidates.append((f"{core} reviews", "reviews variant"))

    seen = set()
    variants: List[SearchQuery] = []
    for candidate, rationale in candidates:
        key = candidate.lower()
        if key in seen:
            continue
        seen.add(key)
        variants.append(SearchQuery(text=candidate, filters=filters, rationale=rationale))
    return variants[: max(limit, 1)]


class QueryPlanner:
    """Classifies a query and turns it into a search plan, consulting the semantic cache first."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config: Optional[PlannerConfig] = None,
        cache: Optional[SemanticCache] = None,
        classifier: Optional[LLMClient] = None,
    ):
        self.registry = registry
        self.config = config or PlannerConfig()
        self.cache = cache
        self.classifier = classifier

    async def plan(self, query: str) -> PlanOutcome:
        if self.cache is not None:
            hit = await self.cache.lookup(query)
            if hit is not None:
                return hit

        chain = self.registry.fallback_chain(Capability.SEARCH)
        question_type = classify_question(query)
        entities = extract_entities(query)
        extra: List[str] = []
        llm_failed = False

        if self.config.use_llm_classifier and self.classifier is not None:
            try:
                question_type, entities, extra = await self._classify_with_llm(query, question_type, entities)
            except (LlmError, ValueError) as exc:
                logger.warning("Planner LLM failed; searching with the raw query: %s", exc)
                llm_failed = True

        intent = Intent(
            question_type=question_type,
            entities=entities,
            time_constraint=derive_time_constraint(query),
        )
        if llm_failed:
            variants = [SearchQuery(text=query.strip(), rationale="planner fallback")]
        else:
            variants = self._merge_variants(generate_variants(query, intent, self.config.max_variants), extra)

        providers = self.select_providers(chain, intent, query)
        tasks = [SearchTask(provider=provider, query=variant) for variant in variants for provider in providers]
        logger.info(
            "Planned %s (%s): %s queries across %s",
            query,
            intent.question_type.value,
            len(variants),
            ", ".join(providers),
        )
        return Planned(
            intent=intent,
            plan=SearchPlan(
                tasks=tasks,
                max_sources=self.config.max_sources,
                timeout=self.config.search_timeout,
                per_call_timeout=self.config.per_call_timeout,
            ),
        )

    def select_providers(self, chain: Sequence[str], intent: Intent, query: str) -> List[str]:
        ambiguous = len(query.split()) < self.config.ambiguous_word_count
        if intent.question_type in _MULTI_PROVIDER_TYPES or ambiguous:
            return list(chain[: max(self.config.max_providers, 1)])
        return [chain[0]]

    async def _classify_with_llm(
        self, query: str, question_type: QuestionType, entities: List[str]
    ) -> Tuple[QuestionType, List[str], List[str]]:
        response = await self.classifier.generate(
            build_classifier_messages(query), temperature=0.0, max_tokens=300
        )
        try:
            data = extract_json_object(response.content)
        except json.JSONDecodeError as exc:
            raise ValueError(f"unparseable classifier output: {exc}") from exc
        raw_type = data.get("question_type")
        if raw_type:
            question_type = QuestionType(str(raw_type).strip().lower())
        merged = list(dict.fromkeys(entities + [str(item) for item in data.get("entities") or [] if item]))
        extra = [str(item).strip() for item in data.get("variants") or [] if str(item).strip()]
        return question_type, merged, extra

    def _merge_variants(self, variants: List[SearchQuery], extra: Sequence[str]) -> List[SearchQuery]:
        known = {variant.text.lower() for variant in variants}
        for text in extra:
            if len(variants) >= self.config.max_variants:
                break
            if text.lower() not in known:
                variants.append(SearchQuery(text=text, filters=variants[0].filters, rationale="llm variant"))
                known.add(text.lower())
        return variants
