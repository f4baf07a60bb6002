"""Pydantic models and enums shared across the pipeline."""

from research_pipeline.models.base import (  # noqa: F401
    DataEntity,
    Domain,
    ExecutionStep,
    IntentCategory,
    OutputFormat,
    PipelinePhase,
    ResearchDepth,
    ResponseStyle,
    RiskFlag,
    SourceType,
    Tone,
)
from research_pipeline.models.blueprint import DataStructurePlan, ReasoningBlueprint  # noqa: F401
from research_pipeline.models.events import ProgressEvent  # noqa: F401
from research_pipeline.models.research import (  # noqa: F401
    ResearchReport,
    ResearchResult,
    ResearchSource,
    ResearchStats,
)
from research_pipeline.models.result import PipelineMetadata, PipelineResult, RunStatus  # noqa: F401
from research_pipeline.models.structured import OutlineSection, StructuredOutput, TableSpec  # noqa: F401
from research_pipeline.models.task import IntentClassification, TaskPlan  # noqa: F401
