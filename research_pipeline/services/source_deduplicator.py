from __future__ import annotations

from typing import Any, Dict, List
from urllib.parse import urlsplit, urlunsplit

import structlog

from research_pipeline.models.research import ResearchSource

logger = structlog.get_logger(__name__)


def normalize_url(url: str) -> str:
    """Identity key for a URL: case-folded scheme/host, no fragment, no trailing slash."""
    raw = (url or "").strip()
    if not raw:
        return ""
    parts = urlsplit(raw)
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


class SourceDeduplicator:
    """Removes duplicate research sources by URL and ranks the survivors.

    The first occurrence of a URL wins; later duplicates are dropped even if
    they carry a higher relevance score, so provider order decides ties.
    """

    def deduplicate(self, sources: List[ResearchSource]) -> Dict[str, Any]:
        if not sources:
            return {"unique_results": [], "duplicates_removed": 0, "duplicate_groups": {}}

        seen: Dict[str, ResearchSource] = {}
        duplicate_groups: Dict[str, List[ResearchSource]] = {}
        unique_results: List[ResearchSource] = []
        duplicates_removed = 0

        for source in sources:
            key = normalize_url(source.url)
            if not key:
                duplicates_removed += 1
                continue
            if key in seen:
                duplicates_removed += 1
                duplicate_groups.setdefault(key, [seen[key]]).append(source)
                continue
            seen[key] = source
            unique_results.append(source)

        if duplicates_removed:
            logger.debug(
                "Sources deduplicated",
                original=len(sources),
                unique=len(unique_results),
                removed=duplicates_removed,
            )
        return {
            "unique_results": unique_results,
            "duplicates_removed": duplicates_removed,
            "duplicate_groups": duplicate_groups,
        }

    @staticmethod
    def rank(sources: List[ResearchSource]) -> List[ResearchSource]:
        """Stable sort by descending relevance."""
        return sorted(sources, key=lambda s: s.relevance_score, reverse=True)

    def merge(self, sources: List[ResearchSource], limit: int) -> List[ResearchSource]:
        """Deduplicate, rank and truncate to ``limit``."""
        unique = self.deduplicate(sources)["unique_results"]
        return self.rank(unique)[: max(0, limit)]
