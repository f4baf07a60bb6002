"""
Task Interpreter
Converts a raw request (plus the classifier verdict) into an immutable
``TaskPlan``. One structured-generation call fills every field; rule-based
passes then union in keyword-detected domains, formats, geography and time
context, and derive credits and confidence deterministically.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

import structlog

from research_pipeline.core.exceptions import MalformedOutputError
from research_pipeline.models.base import (
    Domain,
    ExecutionStep,
    OutputFormat,
    ResearchDepth,
    unique,
)
from research_pipeline.models.outcomes import Fallback, Outcome, Parsed
from research_pipeline.models.task import IntentClassification, TaskPlan
from research_pipeline.services.completion_gateway import CompletionGateway, function_tool
from research_pipeline.services.intent_classifier import should_skip_research

if TYPE_CHECKING:
    from research_pipeline.services.progress import CancellationToken

logger = structlog.get_logger(__name__)


INTERPRET_TASK_TOOL: Dict[str, Any] = function_tool(
    "interpret_task",
    "Convert a user prompt into a structured task plan for execution",
    {
        "type": "object",
        "properties": {
            "intent": {
                "type": "string",
                "description": "Clear, action-oriented description of what the user wants",
            },
            "domains": {"type": "array", "items": {"type": "string", "enum": [d.value for d in Domain]}},
            "requires_real_time_research": {"type": "boolean"},
            "research_depth": {"type": "string", "enum": [d.value for d in ResearchDepth]},
            "outputs": {"type": "array", "items": {"type": "string", "enum": [o.value for o in OutputFormat]}},
            "execution_plan": {
                "type": "array",
                "items": {"type": "string", "enum": [s.value for s in ExecutionStep]},
            },
            "search_queries": {"type": "array", "items": {"type": "string"}},
            "time_context": {"type": "string", "description": "e.g. SS26, FW25, 2025, Q1 2026"},
            "geography": {"type": "array", "items": {"type": "string"}},
        },
        "required": [
            "intent",
            "domains",
            "requires_real_time_research",
            "research_depth",
            "outputs",
            "execution_plan",
        ],
    },
)

SYSTEM_PROMPT = """You convert user prompts into structured, executable task plans.

1. Identify the core intent in action-oriented language
2. Detect all relevant domains (can be multiple)
3. Decide whether real-time web research is needed
4. Research depth: quick (1-2 sources), standard (5-10), deep (20+)
5. Identify requested output formats (excel for lists/data, pdf for reports, pptx for decks)
6. Create an ordered execution plan
7. Generate initial search queries
8. Extract time context (seasons like SS26, FW25, years, quarters)
9. Identify geographic focus

Always respond using the interpret_task function."""


# ────────────────────────────────────────────────────────────
#  Keyword tables
# ────────────────────────────────────────────────────────────
DOMAIN_KEYWORDS: List[Tuple[Domain, Tuple[str, ...]]] = [
    (Domain.SUPPLY_CHAIN, ("supplier", "factory", "factories", "manufacturer", "sourcing", "moq")),
    (Domain.MARKET, ("trend", "forecast", "prediction")),
    (Domain.SUSTAINABILITY, ("sustainable", "sustainability", "eco", "ethical", "recycled", "organic")),
    (Domain.TEXTILE, ("fabric", "material", "fiber", "fibre", "denim", "cotton", "yarn", "textile")),
    (Domain.FASHION, ("brand", "collection", "runway", "fashion")),
    (Domain.BEAUTY, ("skincare", "cosmetic", "makeup", "beauty")),
    (Domain.LIFESTYLE, ("lifestyle", "wellness", "consumer")),
]

# (format, keywords, matching execution step)
OUTPUT_KEYWORDS: List[Tuple[OutputFormat, Tuple[str, ...], ExecutionStep]] = [
    (OutputFormat.EXCEL, ("excel", "spreadsheet", "table"), ExecutionStep.EXCEL_GENERATION),
    (OutputFormat.PDF, ("pdf", "report"), ExecutionStep.PDF_GENERATION),
    (OutputFormat.PPTX, ("ppt", "pptx", "presentation", "deck", "slides"), ExecutionStep.PPTX_GENERATION),
]

_FORMAT_STEPS = {fmt: step for fmt, _, step in OUTPUT_KEYWORDS}

GEOGRAPHY_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\b(europe|european|eu)\b", re.I), "Europe"),
    (re.compile(r"\b(asia|asian)\b", re.I), "Asia"),
    (re.compile(r"\b(north america|usa|u\.s\.|american)\b", re.I), "North America"),
    (re.compile(r"\b(china|chinese)\b", re.I), "China"),
    (re.compile(r"\b(japan|japanese)\b", re.I), "Japan"),
    (re.compile(r"\b(korea|korean)\b", re.I), "Korea"),
    (re.compile(r"\b(italy|italian)\b", re.I), "Italy"),
    (re.compile(r"\b(france|french)\b", re.I), "France"),
    (re.compile(r"\b(uk|british|england)\b", re.I), "UK"),
    (re.compile(r"\b(germany|german)\b", re.I), "Germany"),
]

SEASON_PATTERN = re.compile(r"\b(SS|FW|AW|PF|Resort)\s*'?(\d{4}|\d{2})\b", re.I)
YEAR_PATTERN = re.compile(r"\b(20\d{2})\b")

FOLLOW_UP_PATTERN = re.compile(
    r"^\s*(and|also|what about|how about|more|expand|elaborate|continue|go deeper|same)\b"
    r"|\b(tell me more|the above|previous answer|that list|those results|as before|instead)\b",
    re.I,
)
FOLLOW_UP_MAX_WORDS = 4

DEPTH_CREDITS = {
    ResearchDepth.QUICK: 2,
    ResearchDepth.STANDARD: 5,
    ResearchDepth.DEEP: 15,
}


# ────────────────────────────────────────────────────────────
#  Rule-based detectors
# ────────────────────────────────────────────────────────────
def _contains_word(text: str, keyword: str) -> bool:
    # Whole word, allowing a plural suffix ("supplier" matches "suppliers")
    return re.search(rf"\b{re.escape(keyword)}(?:s|es)?\b", text) is not None


def detect_domains(text: str) -> List[Domain]:
    lower = (text or "").lower()
    return [d for d, words in DOMAIN_KEYWORDS if any(_contains_word(lower, w) for w in words)]


def detect_outputs(text: str) -> List[OutputFormat]:
    lower = (text or "").lower()
    return [fmt for fmt, words, _ in OUTPUT_KEYWORDS if any(_contains_word(lower, w) for w in words)]


def detect_geography(text: str) -> List[str]:
    return [value for pattern, value in GEOGRAPHY_PATTERNS if pattern.search(text or "")]


def detect_time_context(text: str) -> Optional[str]:
    season = SEASON_PATTERN.search(text or "")
    if season:
        return season.group(0).upper()
    year = YEAR_PATTERN.search(text or "")
    return year.group(1) if year else None


def detect_follow_up(text: str, has_history: bool = False) -> bool:
    if FOLLOW_UP_PATTERN.search(text or ""):
        return True
    return has_history and len((text or "").split()) <= FOLLOW_UP_MAX_WORDS


def estimate_credits(depth: ResearchDepth, outputs: Sequence[OutputFormat]) -> int:
    non_text = sum(1 for o in outputs if o != OutputFormat.TEXT)
    return DEPTH_CREDITS.get(depth, DEPTH_CREDITS[ResearchDepth.STANDARD]) + 2 * non_text


def score_confidence(intent: str, domains: Sequence[Any], search_queries: Sequence[str]) -> float:
    score = 0.5
    if len(intent or "") > 10:
        score += 0.2
    if domains:
        score += 0.15
    if search_queries:
        score += 0.15
    return round(min(1.0, score), 4)


# ────────────────────────────────────────────────────────────
#  Interpreter
# ────────────────────────────────────────────────────────────
class TaskInterpreter:
    """Builds the ``TaskPlan`` for one request."""

    def __init__(self, gateway: CompletionGateway) -> None:
        self.gateway = gateway

    async def interpret(
        self,
        text: str,
        classification: Optional[IntentClassification] = None,
        *,
        has_history: bool = False,
        deep_mode: bool = False,
        cancel: Optional["CancellationToken"] = None,
    ) -> Outcome[TaskPlan]:
        """Return ``Parsed`` for model plans, ``Fallback`` when the model output was unusable.

        Provider errors propagate; the gateway already tried its fallback chain.
        """
        user_prompt = f'User prompt: "{text}"'
        if classification is not None:
            user_prompt = f"Intent classified as: {classification.primary_intent.value}\n\n{user_prompt}"

        try:
            args, result = await self.gateway.complete_structured(
                SYSTEM_PROMPT,
                user_prompt,
                INTERPRET_TASK_TOOL,
                max_tokens=1200,
                cancel=cancel,
            )
        except MalformedOutputError as exc:
            logger.warning("Task interpretation unparseable, using fallback plan", error=str(exc))
            return Fallback(
                self.enhance({}, text, classification, has_history=has_history, deep_mode=deep_mode),
                reason=str(exc),
            )

        plan = self.enhance(args, text, classification, has_history=has_history, deep_mode=deep_mode)
        logger.info(
            "Task interpreted",
            provider=result.provider,
            domains=[d.value for d in plan.domains],
            depth=plan.research_depth.value,
            outputs=[o.value for o in plan.outputs],
            estimated_credits=plan.estimated_credits,
        )
        return Parsed(plan)

    def enhance(
        self,
        raw: Dict[str, Any],
        text: str,
        classification: Optional[IntentClassification] = None,
        *,
        has_history: bool = False,
        deep_mode: bool = False,
    ) -> TaskPlan:
        """Union rule-detected values into ``raw`` and derive credits/confidence.

        ``deep_mode`` forces deep research regardless of what the model chose.
        """
        intent = str(raw.get("intent") or "").strip() or text[:200]

        try:
            depth = ResearchDepth(str(raw.get("research_depth") or "standard").lower())
        except ValueError:
            depth = ResearchDepth.STANDARD
        if deep_mode:
            depth = ResearchDepth.DEEP

        model_outputs = raw.get("outputs") or []
        detected_outputs = detect_outputs(text)
        outputs = unique(
            [OutputFormat.TEXT]
            + [o for o in _as_enum_list(model_outputs, OutputFormat) if o != OutputFormat.TEXT]
            + detected_outputs
        )

        domains = unique(_as_enum_list(raw.get("domains"), Domain) + detect_domains(text))

        requires_research = raw.get("requires_real_time_research")
        if requires_research is None:
            requires_research = True
        if classification is not None and should_skip_research(classification):
            requires_research = False

        steps = _as_enum_list(raw.get("execution_plan"), ExecutionStep)
        if requires_research and ExecutionStep.WEB_RESEARCH not in steps:
            steps.insert(0, ExecutionStep.WEB_RESEARCH)
        if not requires_research:
            steps = [s for s in steps if s != ExecutionStep.WEB_RESEARCH]
        if not steps:
            steps = [ExecutionStep.ANALYSIS]
        for fmt in outputs:
            step = _FORMAT_STEPS.get(fmt)
            if step is not None and step not in steps:
                steps.append(step)

        search_queries = [str(q) for q in (raw.get("search_queries") or []) if str(q).strip()]
        if requires_research and not search_queries:
            search_queries = [intent]

        time_context = (str(raw.get("time_context") or "").strip() or None) or detect_time_context(text)
        geography = unique([str(g) for g in (raw.get("geography") or [])] + detect_geography(text))

        return TaskPlan(
            intent=intent,
            is_follow_up=detect_follow_up(text, has_history),
            domains=domains,
            requires_real_time_research=bool(requires_research),
            research_depth=depth,
            outputs=outputs,
            execution_plan=unique(steps),
            search_queries=search_queries,
            time_context=time_context,
            geography=geography,
            confidence=score_confidence(intent, domains, search_queries),
            estimated_credits=estimate_credits(depth, outputs),
        )


def _as_enum_list(values: Any, enum_cls) -> List[Any]:
    if not values:
        return []
    if isinstance(values, str):
        values = [values]
    out = []
    for v in values:
        try:
            out.append(enum_cls(str(v).strip().lower()))
        except ValueError:
            continue
    return out


__all__ = [
    "INTERPRET_TASK_TOOL",
    "TaskInterpreter",
    "detect_domains",
    "detect_follow_up",
    "detect_geography",
    "detect_outputs",
    "detect_time_context",
    "estimate_credits",
    "score_confidence",
]
