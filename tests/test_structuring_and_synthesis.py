import pytest

from research_pipeline.core.exceptions import PipelineError, ProviderError
from research_pipeline.models.base import Domain, ResponseStyle
from research_pipeline.models.blueprint import DataStructurePlan, ReasoningBlueprint
from research_pipeline.models.outcomes import Fallback, Parsed
from research_pipeline.models.research import ResearchResult
from research_pipeline.models.structured import StructuredOutput, TableSpec
from research_pipeline.models.task import TaskPlan
from research_pipeline.services.completion_gateway import CompletionGateway
from research_pipeline.services.intent_classifier import classify_heuristically
from research_pipeline.services.structuring_engine import StructuringEngine
from research_pipeline.services.synthesis_generator import (
    SUMMARY_TABLES_HEADER,
    SynthesisGenerator,
    append_tables,
    build_system_prompt,
    render_table,
    strip_inline_tables,
)
from research_pipeline.utils.text import has_citation_markers

from conftest import DENIM_PROMPT, FakeCompletionProvider, http_error, make_source

PLAN = TaskPlan(
    intent="Find sustainable denim suppliers",
    domains=["supply_chain", "textile"],
    search_queries=["denim suppliers"],
)
BLUEPRINT = ReasoningBlueprint(
    task_summary="Shortlist denim suppliers",
    research_questions=["Which mills?"],
    data_structure_plan=DataStructurePlan(tables=["Supplier shortlist"]),
    response_style=ResponseStyle.STRUCTURED_ANALYSIS,
)


def _results():
    return [
        ResearchResult(
            question="Which mills?",
            sources=[
                make_source("https://a.test/mills", 0.9, content="x" * 1000),
                make_source("https://shared.test/report", 0.7),
            ],
            synthesis="Mill A and Mill B lead recycled denim.",
            confidence=0.8,
        ),
        ResearchResult(
            question="Which MOQs?",
            sources=[
                make_source("https://SHARED.test/report/", 0.6),
                make_source("https://b.test/moq", 0.8),
            ],
            synthesis="Mill A accepts 100 m.",
            confidence=0.7,
        ),
    ]


# ────────────────────────────────────────────────────────────
#  Structuring
# ────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_structuring_parses_tables_outline_and_findings():
    engine = StructuringEngine(CompletionGateway([FakeCompletionProvider()]))
    outcome = await engine.structure(BLUEPRINT, _results(), PLAN)

    assert isinstance(outcome, Parsed)
    structured = outcome.value
    assert [t.name for t in structured.tables] == ["Supplier shortlist", "Broken"]
    assert structured.tables[0].rows[0] == ["Mill A", "Italy", "100"]
    assert structured.tables[0].is_well_formed()
    assert not structured.tables[1].is_well_formed()
    assert structured.report_outline[0].section == "Suppliers"
    assert structured.key_findings == ["Mill A accepts 100 m minimum orders"]


def test_structuring_context_is_bounded():
    engine = StructuringEngine(CompletionGateway([]), sources_per_question=1, snippet_chars=10)
    context = engine.build_context(_results())

    assert [len(c["sources"]) for c in context] == [1, 1]
    assert all(len(s["snippet"]) <= 10 for c in context for s in c["sources"])
    assert "content" not in context[0]["sources"][0]


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [http_error(500), http_error(404), http_error(None)])
async def test_structuring_failure_degrades_to_empty_output(error):
    engine = StructuringEngine(CompletionGateway([FakeCompletionProvider(error=error)]))
    outcome = await engine.structure(BLUEPRINT, _results(), PLAN)

    assert isinstance(outcome, Fallback)
    assert outcome.value.is_empty()


@pytest.mark.asyncio
async def test_structuring_malformed_output_degrades():
    provider = FakeCompletionProvider(responses={"structure_outputs": None})
    outcome = await StructuringEngine(CompletionGateway([provider])).structure(BLUEPRINT, _results(), PLAN)
    assert isinstance(outcome, Fallback)


@pytest.mark.asyncio
async def test_structuring_quota_error_propagates():
    engine = StructuringEngine(CompletionGateway([FakeCompletionProvider(error=http_error(402))]))
    with pytest.raises(ProviderError):
        await engine.structure(BLUEPRINT, _results(), PLAN)


@pytest.mark.asyncio
async def test_nothing_to_structure_skips_model_call():
    provider = FakeCompletionProvider()
    blueprint = BLUEPRINT.model_copy(update={"data_structure_plan": DataStructurePlan()})

    outcome = await StructuringEngine(CompletionGateway([provider])).structure(blueprint, [], PLAN)

    assert isinstance(outcome, Fallback)
    assert provider.calls == []


# ────────────────────────────────────────────────────────────
#  Table rendering
# ────────────────────────────────────────────────────────────
def test_render_table_escapes_pipes_and_rejects_malformed():
    table = TableSpec(name="T", columns=["Name", "Note"], rows=[["Mill | A", "multi\nline"]])
    rendered = render_table(table)

    assert rendered.startswith("### T")
    assert "| Mill \\| A | multi line |" in rendered
    assert render_table(TableSpec(name="Bad", columns=["a", "b"], rows=[["1"]])) is None
    assert render_table(TableSpec(name="Empty", columns=["a"], rows=[])) is None


def test_strip_inline_tables_and_append():
    prose = strip_inline_tables("Intro\n| a | b |\n|---|---|\n| 1 | 2 |\nOutro")
    assert prose == "Intro\nOutro"

    good = TableSpec(name="Good", columns=["a"], rows=[["1"]])
    bad = TableSpec(name="Bad", columns=["a", "b"], rows=[["1"]])
    report = append_tables(prose, [good, bad])

    assert report.index("Outro") < report.index(SUMMARY_TABLES_HEADER) < report.index("### Good")
    assert "Bad" not in report
    assert append_tables("Just prose", [bad]) == "Just prose"


def test_system_prompt_domain_guidance():
    business = build_system_prompt(ResponseStyle.STRUCTURED_ANALYSIS, [Domain.TEXTILE])
    personal = build_system_prompt(ResponseStyle.EMPATHETIC_ADVICE, [Domain.TEXTILE])

    assert "DOMAIN: TEXTILE" in business
    assert "DOMAIN:" not in personal


# ────────────────────────────────────────────────────────────
#  Synthesis
# ────────────────────────────────────────────────────────────
@pytest.mark.asyncio
async def test_report_has_no_citations_and_tables_follow_prose():
    provider = FakeCompletionProvider("primary", "model-a")
    structured = StructuredOutput(
        tables=[
            TableSpec(name="Supplier shortlist", columns=["Supplier", "MOQ"], rows=[["Mill A", "100"]]),
            TableSpec(name="Broken", columns=["A", "B"], rows=[["x"]]),
        ],
        key_findings=["Mill A accepts 100 m"],
    )

    output = await SynthesisGenerator(CompletionGateway([provider])).generate(
        DENIM_PROMPT, PLAN, BLUEPRINT, _results(), structured, classify_heuristically(DENIM_PROMPT)
    )

    report = output.report
    assert not has_citation_markers(report)
    assert "Inline Mill" not in report
    assert "Broken" not in report
    assert report.index("## Next steps") < report.index(SUMMARY_TABLES_HEADER)
    assert report.rstrip().endswith("| Mill A | 100 |")
    assert output.completion.label == "primary:model-a"


@pytest.mark.asyncio
async def test_synthesis_prompt_carries_findings_and_urls():
    seen = {}

    def _capture(system_prompt, user_prompt):
        seen["system"] = system_prompt
        seen["user"] = user_prompt
        return "Plain answer."

    provider = FakeCompletionProvider(responses={"text": _capture})
    await SynthesisGenerator(CompletionGateway([provider])).generate(
        DENIM_PROMPT, PLAN, BLUEPRINT, _results(), StructuredOutput(key_findings=["Mill A accepts 100 m"])
    )

    assert "### Which mills?" in seen["user"]
    assert "https://a.test/mills" in seen["user"]
    assert "- Mill A accepts 100 m" in seen["user"]
    assert "DOMAIN: SUPPLY_CHAIN" in seen["system"]


def test_compiled_sources_are_unique_and_ranked():
    sources = SynthesisGenerator(CompletionGateway([])).compile_sources(_results())

    assert [s.url for s in sources] == [
        "https://a.test/mills",
        "https://b.test/moq",
        "https://shared.test/report",
    ]


@pytest.mark.asyncio
async def test_empty_report_is_an_error():
    provider = FakeCompletionProvider(responses={"text": "| only | a table |\n|---|---|"})
    with pytest.raises(PipelineError):
        await SynthesisGenerator(CompletionGateway([provider])).generate(
            DENIM_PROMPT, PLAN, BLUEPRINT, _results(), StructuredOutput()
        )
