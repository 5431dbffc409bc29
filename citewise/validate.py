from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .types import Citation, Source, ValidationIssue, ValidationReport

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


class QuoteMode(str, Enum):
    EXACT = "exact"
    NORMALIZED = "normalized"
    FUZZY = "fuzzy"


def _normalize(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip().lower()


def _best_window_ratio(needle: str, haystack: str) -> float:
    """Best SequenceMatcher ratio of ``needle`` against same-length windows of ``haystack``."""

    if not needle or not haystack:
        return 0.0
    if len(needle) >= len(haystack):
        return SequenceMatcher(None, needle, haystack).ratio()
    matcher = SequenceMatcher(None, haystack, needle, autojunk=False)
    best = 0.0
    # Anchor windows on the matching blocks to avoid scanning every offset.
    for block in matcher.get_matching_blocks():
        start = max(block.a - block.b, 0)
        window = haystack[start : start + len(needle)]
        best = max(best, SequenceMatcher(None, needle, window).ratio())
        if best >= 1.0:
            break
    return best


@dataclass
class QuotePolicy:
    mode: QuoteMode = QuoteMode.EXACT
    fuzzy_threshold: float = 0.9

    def matches(self, quote: str, content: str) -> bool:
        if self.mode == QuoteMode.EXACT:
            return quote in content
        normalized_quote = _normalize(quote)
        normalized_content = _normalize(content)
        if normalized_quote in normalized_content:
            return True
        if self.mode == QuoteMode.FUZZY:
            return _best_window_ratio(normalized_quote, normalized_content) >= self.fuzzy_threshold
        return False


def validate_citations(
    citations: Sequence[Citation],
    sources: Sequence[Source],
    policy: Optional[QuotePolicy] = None,
) -> Tuple[List[Citation], ValidationReport]:
    """Drop citations pointing at unknown sources or carrying unverifiable quotes."""

    policy = policy or QuotePolicy()
    by_id: Dict[str, Source] = {source.id: source for source in sources}
    kept: List[Citation] = []
    issues: List[ValidationIssue] = []

    for idx, citation in enumerate(citations):
        source = by_id.get(citation.source_id)
        if source is None:
            issues.append(
                ValidationIssue(
                    message=f"Citation references unknown source {citation.source_id}",
                    citation_index=idx,
                    source_id=citation.source_id,
                )
            )
            continue
        if citation.quote and not policy.matches(citation.quote, source.content):
            issues.append(
                ValidationIssue(
                    message=f"Quote not found in source {citation.source_id}",
                    citation_index=idx,
                    source_id=citation.source_id,
                )
            )
            continue
        kept.append(citation)

    for issue in issues:
        logger.info("Dropping citation %s: %s", issue.citation_index, issue.message)
    return kept, ValidationReport(kept=len(kept), dropped=len(issues), issues=issues)
