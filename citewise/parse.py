from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import trafilatura
from bs4 import BeautifulSoup

from .fetch import FetchResult

logger = logging.getLogger(__name__)

_PUBLISHED_META = (
    {"property": "article:published_time"},
    {"name": "date"},
    {"itemprop": "datePublished"},
)


@dataclass
class ParsedPage:
    text: str
    title: Optional[str] = None
    published_at: Optional[datetime] = None
    author: Optional[str] = None

    @property
    def word_count(self) -> int:
        return len(self.text.split())


def _detect_title(soup: BeautifulSoup) -> Optional[str]:
    if soup.title and soup.title.text:
        return soup.title.text.strip() or None
    return None


def _detect_published_at(soup: BeautifulSoup) -> Optional[datetime]:
    for attrs in _PUBLISHED_META:
        meta = soup.find("meta", attrs)
        if meta and meta.get("content"):
            try:
                return datetime.fromisoformat(meta["content"].replace("Z", "+00:00"))
            except ValueError:
                continue
    return None


def _detect_author(soup: BeautifulSoup) -> Optional[str]:
    meta = soup.find("meta", {"name": "author"})
    if meta and meta.get("content"):
        return meta["content"].strip() or None
    return None


def _fallback_plain_text(soup: BeautifulSoup) -> Optional[str]:
    for tag in soup(["script", "style", "nav", "footer", "header", "aside"]):
        tag.decompose()
    text = soup.get_text("\n", strip=True)
    return text or None


def clean_content(fetch_result: FetchResult, min_words: int = 30) -> Optional[ParsedPage]:
    """Extract main text and page metadata; ``None`` when nothing usable remains."""

    if not fetch_result.ok:
        logger.debug("Skipping parse for %s due to status %s", fetch_result.url, fetch_result.status_code)
        return None
    html = fetch_result.content
    text = trafilatura.extract(
        html,
        url=fetch_result.metadata.get("final_url", fetch_result.url),
        include_images=False,
        include_comments=False,
        include_tables=False,
        no_fallback=True,
    )
    soup = BeautifulSoup(html, "lxml")
    if not text:
        logger.debug("Trafilatura extraction failed for %s, attempting plaintext fallback.", fetch_result.url)
        text = _fallback_plain_text(BeautifulSoup(html, "lxml"))
    if not text or len(text.split()) < min_words:
        return None
    return ParsedPage(
        text=text.strip(),
        title=_detect_title(soup),
        published_at=_detect_published_at(soup),
        author=_detect_author(soup),
    )
