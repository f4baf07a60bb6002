"""
Structured output models (tables, report outline, key findings)
"""

from __future__ import annotations

from typing import Any, List

from pydantic import BaseModel, Field, field_validator


class TableSpec(BaseModel):
    name: str
    columns: List[str] = Field(default_factory=list)
    rows: List[List[str]] = Field(default_factory=list)

    @field_validator("rows", mode="before")
    @classmethod
    def _stringify_cells(cls, v: Any) -> List[List[str]]:
        if not v:
            return []
        return [["" if cell is None else str(cell) for cell in row] for row in v if isinstance(row, (list, tuple))]

    def is_well_formed(self) -> bool:
        """Every row has exactly one cell per column and there is at least one column."""
        if not self.columns:
            return False
        return all(len(row) == len(self.columns) for row in self.rows)


class OutlineSection(BaseModel):
    section: str
    content: str = ""
    key_points: List[str] = Field(default_factory=list)


class StructuredOutput(BaseModel):
    tables: List[TableSpec] = Field(default_factory=list)
    report_outline: List[OutlineSection] = Field(default_factory=list)
    key_findings: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.tables or self.report_outline or self.key_findings)
