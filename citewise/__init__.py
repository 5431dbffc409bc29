"""
Research-job pipeline for cited answers.

This package exposes the planner → search → synthesize orchestration
along with provider registry, storage and typing utilities.
"""

from .pipeline import PipelineConfig, ResearchPipeline
from .registry import Capability, ProviderRegistry, RegistryHolder, build_registry
from .store import MemoryStore, SQLiteStore, Store
from .types import (
    Answer,
    Citation,
    Confidence,
    Intent,
    Job,
    JobStatus,
    ProgressEvent,
    SearchQuery,
    SearchResult,
    Source,
)

__version__ = "0.1.0"

__all__ = [
    "Answer",
    "Capability",
    "Citation",
    "Confidence",
    "Intent",
    "Job",
    "JobStatus",
    "MemoryStore",
    "PipelineConfig",
    "ProgressEvent",
    "ProviderRegistry",
    "RegistryHolder",
    "ResearchPipeline",
    "SQLiteStore",
    "SearchQuery",
    "SearchResult",
    "Source",
    "Store",
    "build_registry",
]
