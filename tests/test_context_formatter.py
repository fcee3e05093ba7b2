from langchain_core.messages import HumanMessage, SystemMessage

from context_engine.domain.context.context_formatter import format_for_llm, to_messages
from context_engine.domain.models.context_package import (
    ContextPackage,
    KnowledgeItem,
    KnowledgeKind,
    ProjectContext,
    Provenance,
    QualityAssessment,
    TaskType,
)
from context_engine.domain.tool.tool_registry import BASELINE_TOOLS


def _package(**overrides):
    fields = dict(
        task_type=TaskType.FEATURE,
        session_id="s1",
        user_input="add payment retries",
        system_instructions=["Be precise."],
        project_context=ProjectContext(goals=["Reliable checkout"], architecture="FastAPI"),
        available_tools=list(BASELINE_TOOLS),
        relevant_knowledge=[
            KnowledgeItem(id=f"k{i}", provenance=Provenance.EXTERNAL, kind=KnowledgeKind.SOLUTION,
                          source="web_search", title=f"Item {i}", description="retry with backoff",
                          relevance_score=0.9)
            for i in range(7)
        ],
    )
    fields.update(overrides)
    return ContextPackage(**fields)


def test_format_includes_sections():
    text = format_for_llm(_package())

    assert text.startswith("# Context package")
    assert "**Task type**: feature" in text
    assert "**Quality score**: not assessed" in text
    assert "- Be precise." in text
    assert "**Goals**: Reliable checkout" in text
    assert "**Architecture**: FastAPI" in text
    assert "**Item 4**" in text
    assert "**Item 5**" not in text
    assert "**get-context-info**" in text
    assert "## Related patterns" not in text


def test_low_quality_package_carries_warning():
    report = QualityAssessment.from_scores(
        50, 50, 50, rationale="completeness 50/100", optimization_suggestions=["Collect more examples"]
    )

    text = format_for_llm(_package(quality_report=report))

    assert "**Quality score**: 50/100" in text
    assert "## Context quality warning" in text
    assert "- Collect more examples" in text


def test_high_quality_package_has_no_warning():
    report = QualityAssessment.from_scores(90, 90, 90, can_proceed=True)

    assert "## Context quality warning" not in format_for_llm(_package(quality_report=report))


def test_to_messages():
    package = _package()

    messages = to_messages(package)

    assert isinstance(messages[0], SystemMessage)
    assert isinstance(messages[1], HumanMessage)
    assert messages[1].content == "add payment retries"
