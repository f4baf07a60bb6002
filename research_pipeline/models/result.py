"""
Final pipeline result handed to the caller for persistence
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from research_pipeline.models.blueprint import ReasoningBlueprint
from research_pipeline.models.research import ResearchSource
from research_pipeline.models.structured import StructuredOutput
from research_pipeline.models.task import IntentClassification, TaskPlan


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    CLARIFICATION = "clarification"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineMetadata(BaseModel):
    duration_ms: int = 0
    credits_used: int = 0
    source_count: int = 0
    confidence: float = 0.0
    deep_mode: bool = False
    model_used_label: Optional[str] = None
    new_balance: Optional[int] = None


class PipelineResult(BaseModel):
    run_id: str
    status: RunStatus
    report: str = ""
    sources: List[ResearchSource] = Field(default_factory=list)
    structured_output: StructuredOutput = Field(default_factory=StructuredOutput)
    metadata: PipelineMetadata = Field(default_factory=PipelineMetadata)
    classification: Optional[IntentClassification] = None
    task_plan: Optional[TaskPlan] = None
    blueprint: Optional[ReasoningBlueprint] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.PARTIAL, RunStatus.CLARIFICATION)
