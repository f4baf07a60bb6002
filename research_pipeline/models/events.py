"""
Progress event model streamed to callers
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from research_pipeline.models.base import PipelinePhase


class ProgressEvent(BaseModel):
    run_id: str
    phase: PipelinePhase
    message: str
    progress: int = Field(ge=0, le=100)
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def to_sse(self) -> str:
        """Render as one server-sent-events frame."""
        return f"event: {self.phase.value}\ndata: {self.model_dump_json()}\n\n"
