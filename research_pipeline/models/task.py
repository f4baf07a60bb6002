"""
Models for intent classification and task interpretation
"""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from research_pipeline.models.base import (
    Domain,
    ExecutionStep,
    IntentCategory,
    OutputFormat,
    ResearchDepth,
    ResponseStyle,
    Tone,
    coerce_enum_list,
    unique,
)


class IntentClassification(BaseModel):
    """Classifier verdict for one request."""

    primary_intent: IntentCategory
    secondary_intent: Optional[IntentCategory] = None
    confidence: float = Field(ge=0.0, le=1.0)
    is_ambiguous: bool = False
    clarifying_question: Optional[str] = None
    tone: Tone = Tone.NEUTRAL
    response_style: ResponseStyle = ResponseStyle.FACTUAL_SUMMARY
    source: str = Field("model", description="'model' or 'heuristic'")

    @field_validator("secondary_intent", mode="before")
    @classmethod
    def _none_secondary(cls, v: Any) -> Any:
        if v in (None, "", "none"):
            return None
        return v


class TaskPlan(BaseModel):
    """Structured description of what a request needs. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    intent: str
    is_follow_up: bool = False
    domains: List[Domain] = Field(default_factory=list)
    requires_real_time_research: bool = True
    research_depth: ResearchDepth = ResearchDepth.STANDARD
    outputs: List[OutputFormat] = Field(default_factory=lambda: [OutputFormat.TEXT])
    execution_plan: List[ExecutionStep] = Field(default_factory=list)
    search_queries: List[str] = Field(default_factory=list)
    time_context: Optional[str] = None
    geography: List[str] = Field(default_factory=list)
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    estimated_credits: int = 0

    @field_validator("domains", mode="before")
    @classmethod
    def _domains(cls, v: Any) -> List[Domain]:
        return coerce_enum_list(v, Domain)

    @field_validator("outputs", mode="before")
    @classmethod
    def _outputs(cls, v: Any) -> List[OutputFormat]:
        return coerce_enum_list(v, OutputFormat) or [OutputFormat.TEXT]

    @field_validator("execution_plan", mode="before")
    @classmethod
    def _steps(cls, v: Any) -> List[ExecutionStep]:
        return coerce_enum_list(v, ExecutionStep)

    @field_validator("geography", "search_queries", mode="before")
    @classmethod
    def _strings(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return unique([str(x).strip() for x in v if str(x).strip()])

    @property
    def deep_mode(self) -> bool:
        return self.research_depth == ResearchDepth.DEEP
