"""
Reasoning blueprint models
"""

from __future__ import annotations

from typing import Any, List

from pydantic import BaseModel, Field, field_validator, model_validator

from research_pipeline.models.base import (
    DataEntity,
    ResponseStyle,
    RiskFlag,
    coerce_enum_list,
)


class DataStructurePlan(BaseModel):
    tables: List[str] = Field(default_factory=list)
    documents: List[str] = Field(default_factory=list)
    presentations: List[str] = Field(default_factory=list)
    web_outputs: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.tables or self.documents or self.presentations or self.web_outputs)


class ReasoningBlueprint(BaseModel):
    """What to research and how results should be shaped."""

    task_summary: str
    objectives: List[str] = Field(default_factory=list)
    research_questions: List[str] = Field(default_factory=list)
    required_data_entities: List[DataEntity] = Field(default_factory=list)
    data_structure_plan: DataStructurePlan = Field(default_factory=DataStructurePlan)
    logic_steps: List[str] = Field(default_factory=list)
    quality_criteria: List[str] = Field(default_factory=list)
    risk_flags: List[RiskFlag] = Field(default_factory=lambda: [RiskFlag.NONE])
    response_style: ResponseStyle = ResponseStyle.FACTUAL_SUMMARY

    @field_validator("required_data_entities", mode="before")
    @classmethod
    def _entities(cls, v: Any) -> List[DataEntity]:
        return coerce_enum_list(v, DataEntity)

    @field_validator("risk_flags", mode="before")
    @classmethod
    def _risks(cls, v: Any) -> List[RiskFlag]:
        return coerce_enum_list(v, RiskFlag)

    @model_validator(mode="after")
    def _normalise_risks(self) -> "ReasoningBlueprint":
        # ``none`` is a sentinel: present alone or not at all
        real = [r for r in self.risk_flags if r != RiskFlag.NONE]
        self.risk_flags = real or [RiskFlag.NONE]
        return self
