"""
Research source and result models
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from research_pipeline.models.base import SourceType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResearchSource(BaseModel):
    """One source returned by a research provider. URL is the identity key."""

    url: str
    title: str = ""
    snippet: str = ""
    content: Optional[str] = None
    source_type: SourceType = SourceType.SEARCH
    relevance_score: float = Field(0.5, ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=_utcnow)
    provider_used: str = ""


class ResearchResult(BaseModel):
    question: str
    sources: List[ResearchSource] = Field(default_factory=list)
    synthesis: Optional[str] = None
    confidence: float = Field(0.5, ge=0.0, le=1.0)


class ResearchStats(BaseModel):
    total_sources: int = 0
    average_confidence: float = 0.0
    provider_calls: Dict[str, int] = Field(default_factory=dict)
    provider_failures: Dict[str, int] = Field(default_factory=dict)
    deep_fetches: int = 0


class ResearchReport(BaseModel):
    """Everything the Research Executor hands to later phases."""

    results: List[ResearchResult] = Field(default_factory=list)
    stats: ResearchStats = Field(default_factory=ResearchStats)
