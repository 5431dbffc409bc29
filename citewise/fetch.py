from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    url: str
    status_code: int
    content: str
    fetched_at: datetime
    headers: Dict[str, str]
    from_cache: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code == 200 and bool(self.content.strip())


class FetchCache:
    """Successful page fetches stored as JSON under ``<cache_dir>/fetch/<sha[:2]>/``."""

    def __init__(self, cache_dir: Path, ttl: timedelta = timedelta(days=7)):
        self.root = Path(cache_dir) / "fetch"
        self.ttl = ttl
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, url: str) -> Path:
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
        return self.root / digest[:2] / f"{digest}.json"

    def get(self, url: str) -> Optional[FetchResult]:
        path = self.path_for(url)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            fetched_at = datetime.fromisoformat(payload["fetched_at"])
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Ignoring unreadable fetch cache entry %s: %s", path.name, exc)
            return None
        if datetime.now(timezone.utc) - fetched_at > self.ttl:
            path.unlink(missing_ok=True)
            return None
        return FetchResult(
            url=url,
            status_code=int(payload.get("status_code", 200)),
            content=payload.get("content", ""),
            fetched_at=fetched_at,
            headers=payload.get("headers") or {},
            from_cache=True,
            metadata=payload.get("metadata") or {},
        )

    def set(self, result: FetchResult) -> None:
        path = self.path_for(result.url)
        entry = {
            "status_code": result.status_code,
            "content": result.content,
            "headers": {key: value for key, value in result.headers.items() if key.lower() == "content-type"},
            "fetched_at": result.fetched_at.isoformat(),
            "metadata": result.metadata,
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(entry), encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not cache %s: %s", result.url, exc)


class Fetcher:
    """HTTP page fetcher with an optional on-disk cache."""

    def __init__(
        self,
        user_agent: str = "citewise/0.1",
        timeout: float = 8.0,
        cache: Optional[FetchCache] = None,
        max_bytes: int = 2_000_000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.user_agent = user_agent
        self.timeout = timeout
        self.cache = cache
        self.max_bytes = max_bytes
        self._transport = transport

    async def fetch(self, url: str, use_cache: bool = True) -> Optional[FetchResult]:
        """Fetch ``url``; returns ``None`` on transport failure."""

        if use_cache and self.cache is not None:
            cached = self.cache.get(url)
            if cached:
                return cached

        headers = {"User-Agent": self.user_agent, "Accept": "text/html,application/xhtml+xml"}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=True, transport=self._transport
            ) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Fetch failed for %s: %s", url, exc)
            return None

        content_type = response.headers.get("content-type", "")
        if content_type and "html" not in content_type and "text" not in content_type:
            logger.debug("Skipping non-text content at %s (%s)", url, content_type)
            return None

        result = FetchResult(
            url=url,
            status_code=response.status_code,
            content=response.text[: self.max_bytes],
            fetched_at=datetime.now(timezone.utc),
            headers=dict(response.headers),
            from_cache=False,
            metadata={"final_url": str(response.url)},
        )
        if response.status_code == 200:
            if self.cache is not None:
                self.cache.set(result)
        else:
            logger.warning("Non-200 response for %s: %s", url, response.status_code)
        return result
