from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Sequence

from .llm import LLMMessage
from .types import Answer, Citation, Confidence, Source

SYNTHESIS_SYSTEM_PROMPT = """You are a research assistant that answers questions using only the sources provided.

Rules:
1. Use ONLY information from the sources. Never invent facts.
2. Every claim must cite a source by its id, e.g. [src_abc123def456].
3. Quotes must be copied verbatim from the source content.
4. If sources disagree, say so and present both views.
5. If the sources cannot answer the question, say so and use confidence "insufficient".

Respond with a single JSON object and nothing else:
{
  "summary": "1-2 sentence direct answer",
  "detail": "longer explanation with inline [source_id] citations",
  "citations": [
    {"claim": "specific claim", "source_id": "src_...", "quote": "optional verbatim quote"}
  ],
  "confidence": "high|medium|low|insufficient",
  "limitations": ["caveats about the answer"]
}"""

CLASSIFIER_SYSTEM_PROMPT = (
    "Classify the research question. Reply with JSON only: "
    '{"question_type": "factual|comparison|explanation|current_event|how_to|opinion", '
    '"entities": ["..."], "variants": ["up to 2 alternative search queries"]}'
)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def estimate_tokens(text: str) -> int:
    return len(text) // 4


def format_source(source: Source, max_chars: int) -> str:
    content = source.content
    if len(content) > max_chars:
        content = content[:max_chars].rsplit(" ", 1)[0] + " ..."
    return f"[{source.id}] {source.title}\nURL: {source.url}\nContent:\n{content}\n"


def build_context(sources: Sequence[Source], max_chars: int = 6000) -> str:
    return "\n---\n".join(format_source(source, max_chars) for source in sources)


def build_synthesis_messages(
    query: str, sources: Sequence[Source], max_source_chars: int = 6000
) -> List[LLMMessage]:
    user_prompt = (
        f"Question: {query}\n\n"
        f"Sources:\n{build_context(sources, max_source_chars)}\n\n"
        "Provide your analysis in the specified JSON format."
    )
    return [
        LLMMessage(role="system", content=SYNTHESIS_SYSTEM_PROMPT),
        LLMMessage(role="user", content=user_prompt),
    ]


def build_classifier_messages(query: str) -> List[LLMMessage]:
    return [
        LLMMessage(role="system", content=CLASSIFIER_SYSTEM_PROMPT),
        LLMMessage(role="user", content=query),
    ]


def extract_json_object(text: str) -> Dict[str, Any]:
    """Parse the first JSON object in ``text``, tolerating code fences."""

    cleaned = _FENCE.sub("", text.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise
        data = json.loads(cleaned[start : end + 1])
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


def _parse_confidence(value: Any) -> Confidence:
    try:
        return Confidence(str(value).strip().lower())
    except ValueError:
        return Confidence.LOW


def parse_synthesis_output(text: str) -> Answer:
    data = extract_json_object(text)
    summary = str(data.get("summary") or "").strip()
    if not summary:
        raise ValueError("synthesis output is missing a summary")
    citations: List[Citation] = []
    for item in data.get("citations") or []:
        if not isinstance(item, dict) or not item.get("source_id"):
            continue
        quote = item.get("quote")
        citations.append(
            Citation(
                claim=str(item.get("claim") or "").strip(),
                source_id=str(item["source_id"]).strip().strip("[]"),
                quote=str(quote) if quote else None,
            )
        )
    limitations = data.get("limitations") or []
    if isinstance(limitations, str):
        limitations = [limitations]
    return Answer(
        summary=summary,
        detail=str(data.get("detail") or "").strip(),
        confidence=_parse_confidence(data.get("confidence")),
        limitations=[str(item) for item in limitations if item],
        citations=citations,
    )
