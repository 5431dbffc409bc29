from __future__ import annotations

import secrets
import string
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import EmptyQuery, InvalidTransition, QueryTooLong

MAX_QUERY_LENGTH = 2000
ID_LENGTH = 12

_ID_ALPHABET = string.ascii_letters + string.digits + "_-"


def new_id(prefix: str) -> str:
    return prefix + "".join(secrets.choice(_ID_ALPHABET) for _ in range(ID_LENGTH))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_query(query: str) -> str:
    """Reject unusable queries before a Job is created."""

    if not query or not query.strip():
        raise EmptyQuery()
    if len(query) > MAX_QUERY_LENGTH:
        raise QueryTooLong(MAX_QUERY_LENGTH, len(query))
    return query


def extract_domain(url: str) -> str:
    host = urlparse(url).netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    return host.split(":")[0]


class JobStatus(str, Enum):
    """Lifecycle stages of a research job."""

    PENDING = "pending"
    PLANNING = "planning"
    SEARCHING = "searching"
    SYNTHESIZING = "synthesizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# planning -> completed is the semantic cache short-circuit.
_ALLOWED_TRANSITIONS: Dict[JobStatus, set] = {
    JobStatus.PENDING: {JobStatus.PLANNING},
    JobStatus.PLANNING: {JobStatus.SEARCHING, JobStatus.COMPLETED},
    JobStatus.SEARCHING: {JobStatus.SYNTHESIZING},
    JobStatus.SYNTHESIZING: {JobStatus.COMPLETED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class QuestionType(str, Enum):
    FACTUAL = "factual"
    COMPARISON = "comparison"
    EXPLANATION = "explanation"
    CURRENT_EVENT = "current_event"
    HOW_TO = "how_to"
    OPINION = "opinion"


class TimeConstraint(str, Enum):
    RECENT = "recent"
    HISTORICAL = "historical"


class Recency(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ANY = "any"


class ContentType(str, Enum):
    NEWS = "news"
    ACADEMIC = "academic"
    GENERAL = "general"
    BLOG = "blog"
    FORUM = "forum"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INSUFFICIENT = "insufficient"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_ORDER.index(self)

    def cap(self, ceiling: "Confidence") -> "Confidence":
        """Return the lower of this level and ``ceiling``."""

        return self if self.rank <= ceiling.rank else ceiling


_CONFIDENCE_ORDER = [Confidence.INSUFFICIENT, Confidence.LOW, Confidence.MEDIUM, Confidence.HIGH]


class Intent(BaseModel):
    """Classified intent of a query. Set once during planning."""

    model_config = ConfigDict(frozen=True)

    question_type: QuestionType
    entities: List[str] = Field(default_factory=list)
    time_constraint: Optional[TimeConstraint] = None
    language: str = "en"


class SearchFilters(BaseModel):
    recency: Optional[Recency] = None
    include_domains: List[str] = Field(default_factory=list)
    exclude_domains: List[str] = Field(default_factory=list)
    content_type: Optional[ContentType] = None


class SearchQuery(BaseModel):
    """Planner produced search query."""

    text: str
    filters: SearchFilters = Field(default_factory=SearchFilters)
    rationale: str = ""


class SearchTask(BaseModel):
    provider: str
    query: SearchQuery


class SearchPlan(BaseModel):
    """Ordered (provider, query) tasks for the executor."""

    tasks: List[SearchTask]
    max_sources: int = 10
    timeout: float = 30.0
    per_call_timeout: float = 10.0

    @property
    def providers(self) -> List[str]:
        seen: List[str] = []
        for task in self.tasks:
            if task.provider not in seen:
                seen.append(task.provider)
        return seen

    @property
    def queries(self) -> List[SearchQuery]:
        seen: Dict[str, SearchQuery] = {}
        for task in self.tasks:
            seen.setdefault(task.query.text, task.query)
        return list(seen.values())


class SearchResult(BaseModel):
    """SERP result entry."""

    url: str
    title: str = "Untitled"
    snippet: str = ""
    score: float = 0.0
    published_at: Optional[datetime] = None
    provider: str = ""

    @field_validator("score")
    @classmethod
    def _clamp_score(cls, value: float) -> float:
        return min(max(float(value), 0.0), 1.0)


class SourceMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    domain: str = ""
    published_at: Optional[datetime] = None
    author: Optional[str] = None
    word_count: int = 0
    provider: str = ""
    fetched: bool = False


class Source(BaseModel):
    """Deduplicated, cleaned and ranked page contributing evidence."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("src_"))
    url: str
    title: str
    content: str
    metadata: SourceMetadata = Field(default_factory=SourceMetadata)
    relevance_score: float = 0.0

    @field_validator("relevance_score")
    @classmethod
    def _clamp_score(cls, value: float) -> float:
        return min(max(float(value), 0.0), 1.0)

    @property
    def domain(self) -> str:
        return self.metadata.domain or extract_domain(self.url)


class SearchMetadata(BaseModel):
    queries_executed: List[str] = Field(default_factory=list)
    providers_used: List[str] = Field(default_factory=list)
    providers_failed: List[str] = Field(default_factory=list)
    total_results: int = 0
    duration_ms: int = 0


class SourceCollection(BaseModel):
    sources: List[Source] = Field(default_factory=list)
    search_metadata: SearchMetadata = Field(default_factory=SearchMetadata)

    def __len__(self) -> int:
        return len(self.sources)

    def is_empty(self) -> bool:
        return not self.sources


class Citation(BaseModel):
    """Claim-to-source mapping; ``source_id`` must exist among the job's sources."""

    claim: str
    source_id: str
    quote: Optional[str] = None


class SynthesisMetadata(BaseModel):
    model: str = ""
    tokens_used: int = 0
    duration_ms: int = 0
    fallback_used: bool = False


class Answer(BaseModel):
    summary: str
    detail: str = ""
    confidence: Confidence = Confidence.INSUFFICIENT
    limitations: List[str] = Field(default_factory=list)
    citations: List[Citation] = Field(default_factory=list)
    synthesis_metadata: SynthesisMetadata = Field(default_factory=SynthesisMetadata)

    @property
    def is_answerable(self) -> bool:
        return self.confidence != Confidence.INSUFFICIENT


class JobError(BaseModel):
    """Structured cause attached to a failed job."""

    code: str
    message: str


class JobMetadata(BaseModel):
    duration_ms: Optional[int] = None
    sources_considered: int = 0
    cached: bool = False
    cached_from: Optional[str] = None
    model: Optional[str] = None


class Job(BaseModel):
    """One end-to-end research request and its lifecycle state."""

    id: str = Field(default_factory=lambda: new_id("job_"))
    query: str
    intent: Optional[Intent] = None
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    answer: Optional[Answer] = None
    citations: List[Citation] = Field(default_factory=list)
    error: Optional[JobError] = None
    metadata: JobMetadata = Field(default_factory=JobMetadata)

    @classmethod
    def create(cls, query: str) -> "Job":
        return cls(query=validate_query(query))

    def transition_to(self, status: JobStatus) -> None:
        if status == JobStatus.FAILED and not self.status.is_terminal:
            self._set_status(status)
            return
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(f"cannot move job {self.id} from {self.status.value} to {status.value}")
        self._set_status(status)

    def set_intent(self, intent: Intent) -> None:
        if self.intent is not None:
            raise InvalidTransition(f"intent already set for job {self.id}")
        self.intent = intent

    def complete(self, answer: Answer, metadata: JobMetadata) -> None:
        self.transition_to(JobStatus.COMPLETED)
        self.answer = answer
        self.citations = list(answer.citations)
        self.metadata = metadata
        self.completed_at = self.updated_at

    def fail(self, error: JobError) -> None:
        self.transition_to(JobStatus.FAILED)
        self.error = error
        self.completed_at = self.updated_at

    def _set_status(self, status: JobStatus) -> None:
        self.status = status
        self.updated_at = utcnow()


class EventType(str, Enum):
    STATUS = "status"
    SOURCE = "source"
    ANSWER = "answer"
    COMPLETE = "complete"
    ERROR = "error"


class ProgressEvent(BaseModel):
    type: EventType
    job_id: str
    sequence: int = 0
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class ValidationIssue(BaseModel):
    """Single dropped citation."""

    message: str
    citation_index: int
    source_id: Optional[str] = None


class ValidationReport(BaseModel):
    """Result of citation validation against stored sources."""

    kept: int
    dropped: int
    issues: List[ValidationIssue] = Field(default_factory=list)

    @property
    def coverage(self) -> float:
        total = self.kept + self.dropped
        return self.kept / total if total else 0.0
