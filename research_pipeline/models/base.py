"""
Base enums and common types for the research pipeline
"""

from enum import Enum


class IntentCategory(str, Enum):
    PERSONAL_EMOTIONAL = "personal_emotional"
    TECHNICAL_PROGRAMMING = "technical_programming"
    ACADEMIC_LEARNING = "academic_learning"
    PROFESSIONAL_BUSINESS = "professional_business"
    GENERAL_FACTUAL = "general_factual"
    CREATIVE_ENTERTAINMENT = "creative_entertainment"


class Tone(str, Enum):
    SEEKING_HELP = "seeking_help"
    CURIOUS = "curious"
    FRUSTRATED = "frustrated"
    NEUTRAL = "neutral"
    CREATIVE = "creative"
    URGENT = "urgent"


class ResponseStyle(str, Enum):
    STRUCTURED_ANALYSIS = "structured_analysis"
    STEP_BY_STEP_GUIDE = "step_by_step_guide"
    EMPATHETIC_ADVICE = "empathetic_advice"
    CREATIVE_OUTPUT = "creative_output"
    FACTUAL_SUMMARY = "factual_summary"


class ResearchDepth(str, Enum):
    QUICK = "quick"
    STANDARD = "standard"
    DEEP = "deep"


class Domain(str, Enum):
    FASHION = "fashion"
    BEAUTY = "beauty"
    TEXTILE = "textile"
    SUSTAINABILITY = "sustainability"
    LIFESTYLE = "lifestyle"
    TECHNOLOGY = "technology"
    MARKET = "market"
    SUPPLY_CHAIN = "supply_chain"
    GENERAL = "general"


class OutputFormat(str, Enum):
    TEXT = "text"
    EXCEL = "excel"
    CSV = "csv"
    PDF = "pdf"
    DOCX = "docx"
    PPTX = "pptx"
    WEB = "web"
    CODE = "code"


class ExecutionStep(str, Enum):
    WEB_RESEARCH = "web_research"
    DATA_STRUCTURING = "data_structuring"
    ANALYSIS = "analysis"
    COMPARISON = "comparison"
    EXCEL_GENERATION = "excel_generation"
    PDF_GENERATION = "pdf_generation"
    PPTX_GENERATION = "pptx_generation"
    CODE_GENERATION = "code_generation"


class DataEntity(str, Enum):
    BRANDS = "brands"
    COMPANIES = "companies"
    PRODUCTS = "products"
    SUPPLIERS = "suppliers"
    MATERIALS = "materials"
    TECHNOLOGIES = "technologies"
    MARKETS = "markets"
    TRENDS = "trends"
    PRICING = "pricing"
    REGULATIONS = "regulations"
    CERTIFICATIONS = "certifications"
    CAMPAIGNS = "campaigns"
    EVENTS = "events"
    STATISTICS = "statistics"
    OTHER = "other"


class RiskFlag(str, Enum):
    DATA_FRESHNESS = "data_freshness_risk"
    SOURCE_RELIABILITY = "source_reliability_risk"
    AMBIGUOUS_SCOPE = "ambiguous_scope"
    MISSING_INPUTS = "missing_inputs"
    FORMAT_COMPLEXITY = "format_complexity"
    NONE = "none"


class SourceType(str, Enum):
    SEARCH = "search"
    CRAWL = "crawl"
    AI_SYNTHESIS = "ai_synthesis"


class PipelinePhase(str, Enum):
    """Progress phases in stream order; ``FAILED`` may follow any of them."""

    INTERPRETING = "interpreting"
    REASONING = "reasoning"
    RESEARCHING = "researching"
    STRUCTURING = "structuring"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelinePhase.COMPLETED, PipelinePhase.FAILED)


# Ordinal used to reject backwards phase transitions
PHASE_ORDER = {
    PipelinePhase.INTERPRETING: 0,
    PipelinePhase.REASONING: 1,
    PipelinePhase.RESEARCHING: 2,
    PipelinePhase.STRUCTURING: 3,
    PipelinePhase.EXECUTING: 4,
    PipelinePhase.COMPLETED: 5,
    PipelinePhase.FAILED: 5,
}


def unique(values):
    """Order-preserving de-duplication for enum/str lists."""
    seen = set()
    out = []
    for v in values:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


def coerce_enum_list(value, enum_cls):
    """Keep only values that belong to ``enum_cls``; drop the rest, keep order."""
    if value is None:
        return []
    if isinstance(value, (str, enum_cls)):
        value = [value]
    allowed = {e.value for e in enum_cls}
    out = []
    for item in value:
        raw = item.value if isinstance(item, enum_cls) else str(item).strip().lower()
        if raw in allowed:
            out.append(enum_cls(raw))
    return unique(out)
