"""
Intent Classifier
Single-shot classification of a request into an intent category with an
ambiguity verdict. Falls back to keyword heuristics whenever the completion
gateway cannot produce a usable answer, so classification never fails a run.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING

import structlog

from research_pipeline.core.exceptions import PipelineError
from research_pipeline.models.base import Domain, IntentCategory, ResponseStyle, Tone
from research_pipeline.models.task import IntentClassification
from research_pipeline.services.completion_gateway import CompletionGateway, function_tool
from research_pipeline.utils.text import sanitize_output

if TYPE_CHECKING:
    from research_pipeline.services.progress import CancellationToken

logger = structlog.get_logger(__name__)


# --- Structured Output Definitions ---

_INTENT_VALUES = [i.value for i in IntentCategory]

CLASSIFY_INTENT_TOOL: Dict[str, Any] = function_tool(
    "classify_intent",
    "Classify the user's query intent, topic and tone before any reasoning.",
    {
        "type": "object",
        "properties": {
            "primary_intent": {
                "type": "string",
                "enum": _INTENT_VALUES,
                "description": "The primary category of the user's query",
            },
            "secondary_intent": {
                "type": "string",
                "enum": _INTENT_VALUES + ["none"],
                "description": "Secondary category if the query spans multiple domains",
            },
            "confidence": {"type": "number", "description": "Confidence level 0-1"},
            "is_ambiguous": {
                "type": "boolean",
                "description": "Whether the query intent is unclear and needs clarification",
            },
            "clarifying_question": {
                "type": "string",
                "description": "If ambiguous, ONE specific clarifying question to ask",
            },
            "detected_signals": {"type": "array", "items": {"type": "string"}},
            "tone": {"type": "string", "enum": [t.value for t in Tone]},
        },
        "required": ["primary_intent", "confidence", "is_ambiguous", "tone"],
    },
)

CLASSIFIER_SYSTEM_PROMPT = """You classify user requests before any research happens.

Categories:
- personal_emotional: relationships, life decisions, feelings, well-being
- technical_programming: APIs, code, tools, integration, debugging
- academic_learning: education, explanations, concepts, courses
- professional_business: business, industry, market analysis, brands, trends
- general_factual: facts, definitions, quick answers
- creative_entertainment: stories, poems, creative writing

Never assume a default domain. Never force business framing on personal
questions. If confidence is below 0.7, mark the query as ambiguous and
provide exactly ONE clarifying question."""

CLARIFICATION_SYSTEM_PROMPT = """You write a short, human clarifying reply.
Acknowledge the request, note that it could mean different things, give a
little immediate value for the most likely reading, and end with ONE
question. Use natural paragraphs, no bullet points, no headers."""


# --- Heuristic signal tables (checked in priority order) ---


@dataclass(frozen=True)
class IntentSignalRule:
    intent: IntentCategory
    signals: Sequence[str]
    confidence: float
    domains: Sequence[Domain] = field(default_factory=tuple)


HEURISTIC_RULES: List[IntentSignalRule] = [
    IntentSignalRule(
        IntentCategory.PERSONAL_EMOTIONAL,
        ("feel", "relationship", "advice", "should i", "my life", "personal",
         "help me decide", "worried", "stressed", "happy", "sad", "anxious",
         "lonely", "lost"),
        0.8,
    ),
    IntentSignalRule(
        IntentCategory.TECHNICAL_PROGRAMMING,
        ("api", "endpoint", "authentication", "token", "sdk", "integration",
         "code", "implement", "developer", "debug", "error", "function",
         "programming", "script"),
        0.85,
    ),
    IntentSignalRule(
        IntentCategory.CREATIVE_ENTERTAINMENT,
        ("write a story", "poem", "creative", "fiction", "imagine", "compose",
         "lyrics", "script", "narrative", "tale"),
        0.85,
    ),
    IntentSignalRule(
        IntentCategory.ACADEMIC_LEARNING,
        ("school", "university", "program", "degree", "career", "internship",
         "course", "masters", "mba", "study", "explain", "learn", "teach",
         "education"),
        0.8,
    ),
    IntentSignalRule(
        IntentCategory.PROFESSIONAL_BUSINESS,
        ("fashion", "brand", "collection", "trend", "supplier", "luxury",
         "retail", "merchandise", "textile", "fabric", "designer", "market",
         "strategy", "business", "company", "instagram", "tiktok",
         "social media", "engagement", "campaign", "analytics"),
        0.8,
        (Domain.FASHION, Domain.MARKET, Domain.SUPPLY_CHAIN),
    ),
]

# Kept at the ambiguity threshold: a keyword miss is not a reason to ask the user
DEFAULT_HEURISTIC_CONFIDENCE = 0.7

_RESPONSE_STYLES: Dict[IntentCategory, ResponseStyle] = {
    IntentCategory.PROFESSIONAL_BUSINESS: ResponseStyle.STRUCTURED_ANALYSIS,
    IntentCategory.ACADEMIC_LEARNING: ResponseStyle.STRUCTURED_ANALYSIS,
    IntentCategory.TECHNICAL_PROGRAMMING: ResponseStyle.STEP_BY_STEP_GUIDE,
    IntentCategory.PERSONAL_EMOTIONAL: ResponseStyle.EMPATHETIC_ADVICE,
    IntentCategory.CREATIVE_ENTERTAINMENT: ResponseStyle.CREATIVE_OUTPUT,
    IntentCategory.GENERAL_FACTUAL: ResponseStyle.FACTUAL_SUMMARY,
}

_TONE_PATTERNS = [
    (Tone.URGENT, re.compile(r"\b(urgent|asap|immediately|right now|emergency)\b", re.I)),
    (Tone.FRUSTRATED, re.compile(r"\b(not working|doesn'?t work|still|again|annoying|frustrat\w*)\b", re.I)),
    (Tone.SEEKING_HELP, re.compile(r"\b(help|please|advice|should i)\b", re.I)),
    (Tone.CREATIVE, re.compile(r"\b(write|poem|story|imagine|compose)\b", re.I)),
    (Tone.CURIOUS, re.compile(r"(\?|\b(what|why|how|who|which|when)\b)", re.I)),
]


def response_style_for(intent: IntentCategory) -> ResponseStyle:
    return _RESPONSE_STYLES.get(intent, ResponseStyle.FACTUAL_SUMMARY)


def infer_tone(text: str) -> Tone:
    for tone, pattern in _TONE_PATTERNS:
        if pattern.search(text or ""):
            return tone
    return Tone.NEUTRAL


def _signal_in(signal: str, text: str) -> bool:
    # Word-boundary match so "api" does not fire on "capital"
    return re.search(rf"\b{re.escape(signal)}", text) is not None


def classify_heuristically(
    text: str,
    domains: Optional[Sequence[Domain]] = None,
) -> IntentClassification:
    """Keyword classifier used whenever the model is unavailable."""
    lower = (text or "").lower()
    domain_set = set(domains or [])
    for rule in HEURISTIC_RULES:
        hits = [s for s in rule.signals if _signal_in(s, lower)]
        if hits or domain_set.intersection(rule.domains):
            return IntentClassification(
                primary_intent=rule.intent,
                confidence=rule.confidence,
                is_ambiguous=False,
                tone=infer_tone(text),
                response_style=response_style_for(rule.intent),
                source="heuristic",
            )
    return IntentClassification(
        primary_intent=IntentCategory.GENERAL_FACTUAL,
        confidence=DEFAULT_HEURISTIC_CONFIDENCE,
        is_ambiguous=False,
        tone=infer_tone(text),
        response_style=response_style_for(IntentCategory.GENERAL_FACTUAL),
        source="heuristic",
    )


# --- Classifier ---


class IntentClassifier:
    """Model-backed intent classifier with a keyword fallback."""

    def __init__(self, gateway: CompletionGateway, ambiguity_threshold: float = 0.7) -> None:
        self.gateway = gateway
        self.ambiguity_threshold = ambiguity_threshold

    async def classify(
        self,
        text: str,
        *,
        cancel: Optional["CancellationToken"] = None,
    ) -> IntentClassification:
        """Classify ``text``; provider problems degrade to heuristics.

        Quota errors are still degraded here: classification is read-only
        and the next paid phase will surface the same provider status.
        """
        if not self.gateway.is_configured():
            return classify_heuristically(text)
        try:
            args, _ = await self.gateway.complete_structured(
                CLASSIFIER_SYSTEM_PROMPT,
                f'Classify this query: "{text}"',
                CLASSIFY_INTENT_TOOL,
                max_tokens=500,
                temperature=0.1,
                cancel=cancel,
            )
            return self._normalise(args, text)
        except PipelineError as exc:
            if cancel is not None and cancel.is_cancelled:
                raise
            logger.warning(
                "Intent classification degraded to heuristics",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return classify_heuristically(text)

    def _normalise(self, args: Dict[str, Any], text: str) -> IntentClassification:
        try:
            primary = IntentCategory(str(args.get("primary_intent", "")).strip())
        except ValueError:
            logger.info("Unknown intent from model, using heuristics", raw=args.get("primary_intent"))
            return classify_heuristically(text)

        try:
            confidence = max(0.0, min(1.0, float(args.get("confidence", 0.5))))
        except (TypeError, ValueError):
            confidence = 0.5

        secondary = args.get("secondary_intent")
        if secondary not in _INTENT_VALUES:
            secondary = None

        try:
            tone = Tone(str(args.get("tone", "neutral")))
        except ValueError:
            tone = infer_tone(text)

        question = (args.get("clarifying_question") or "").strip() or None
        is_ambiguous = bool(args.get("is_ambiguous")) or confidence < self.ambiguity_threshold
        if is_ambiguous and not question:
            question = default_clarifying_question(primary)

        return IntentClassification(
            primary_intent=primary,
            secondary_intent=secondary,
            confidence=confidence,
            is_ambiguous=is_ambiguous,
            clarifying_question=question if is_ambiguous else None,
            tone=tone,
            response_style=response_style_for(primary),
            source="model",
        )

    async def generate_clarification_response(
        self,
        classification: IntentClassification,
        text: str,
        *,
        cancel: Optional["CancellationToken"] = None,
    ) -> str:
        """Write the human-facing clarification reply for an ambiguous request."""
        question = classification.clarifying_question or default_clarifying_question(
            classification.primary_intent
        )
        if self.gateway.is_configured():
            prompt = (
                f'USER QUERY: "{text}"\n'
                f"TONE: {classification.tone.value}\n"
                f"MOST LIKELY INTENT: {classification.primary_intent.value}\n"
                f"QUESTION TO ASK: {question}\n\n"
                "Write the reply now."
            )
            try:
                result = await self.gateway.complete(
                    CLARIFICATION_SYSTEM_PROMPT,
                    prompt,
                    max_tokens=400,
                    temperature=0.7,
                    cancel=cancel,
                    operation="clarification",
                )
                content = sanitize_output(result.content, allow_report_headers=False)
                if content:
                    return content
            except PipelineError as exc:
                if cancel is not None and cancel.is_cancelled:
                    raise
                logger.warning("Clarification generation failed, using fallback text", error=str(exc))
        return fallback_clarification(classification, text, question)


def default_clarifying_question(intent: IntentCategory) -> str:
    if intent == IntentCategory.PERSONAL_EMOTIONAL:
        return "Could you tell me a little more about what's going on, so I can help in the right way?"
    if intent == IntentCategory.PROFESSIONAL_BUSINESS:
        return "Which market, product category or region should I focus on?"
    return "Could you say a bit more about what you're looking for?"


def fallback_clarification(
    classification: IntentClassification,
    text: str,
    question: Optional[str] = None,
) -> str:
    question = question or default_clarifying_question(classification.primary_intent)
    excerpt = (text or "")[:50]
    if classification.tone in (Tone.SEEKING_HELP, Tone.URGENT) or (
        classification.primary_intent == IntentCategory.PERSONAL_EMOTIONAL
    ):
        return (
            "I want to pause here, because your message sounds like it matters.\n\n"
            f'When you say "{excerpt}", I want to be sure I understand.\n\n'
            f"{question}"
        )
    return (
        "I want to make sure I understand what you need.\n\n"
        f"{question}\n\n"
        "Let me know which direction would be most helpful, and I'll focus there."
    )


# --- Output policy helpers ---


def needs_clarification(classification: IntentClassification, threshold: float = 0.7) -> bool:
    return classification.is_ambiguous or classification.confidence < threshold


def should_skip_research(classification: IntentClassification) -> bool:
    """Personal and creative requests are answered without external research."""
    return classification.primary_intent in (
        IntentCategory.PERSONAL_EMOTIONAL,
        IntentCategory.CREATIVE_ENTERTAINMENT,
    )


def allows_report_headers(classification: Optional[IntentClassification]) -> bool:
    if classification is None:
        return True
    return classification.primary_intent in (
        IntentCategory.PROFESSIONAL_BUSINESS,
        IntentCategory.ACADEMIC_LEARNING,
    )


def sanitize_for_intent(text: str, classification: Optional[IntentClassification]) -> str:
    return sanitize_output(text, allow_report_headers=allows_report_headers(classification))


__all__ = [
    "CLASSIFY_INTENT_TOOL",
    "HEURISTIC_RULES",
    "IntentClassifier",
    "allows_report_headers",
    "classify_heuristically",
    "fallback_clarification",
    "infer_tone",
    "needs_clarification",
    "response_style_for",
    "sanitize_for_intent",
    "should_skip_research",
]
