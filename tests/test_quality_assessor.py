import random
from datetime import timedelta

import pytest
from pydantic import ValidationError

from context_engine.domain.context.context_assembler import system_instructions
from context_engine.domain.context.quality_assessor import (
    ISSUE_OVERLOAD,
    ISSUE_STALE,
    MISSING_HISTORY,
    MISSING_KNOWLEDGE,
    MISSING_REQUEST,
    MISSING_TOOLS,
    QualityAssessor,
    SUGGEST_BUGFIX_DETAILS,
    SUGGEST_PRUNE,
    SUGGEST_REFRESH_MEMORY,
    supplement,
)
from context_engine.domain.models.context_package import (
    ConfidenceLevel,
    ContextPackage,
    DecisionRecord,
    KnowledgeItem,
    KnowledgeKind,
    MemoryEntry,
    ProjectContext,
    Provenance,
    QualityAssessment,
    TaskType,
    utcnow,
    weighted_overall,
)
from context_engine.domain.tool.tool_registry import BASELINE_TOOLS, PROVIDER_TOOLS


def _package(**overrides) -> ContextPackage:
    fields = dict(
        task_type=TaskType.BUGFIX,
        session_id="s1",
        user_input="fix null pointer in login",
        system_instructions=system_instructions(TaskType.BUGFIX),
        available_tools=list(BASELINE_TOOLS),
    )
    fields.update(overrides)
    return ContextPackage(**fields)


def _knowledge(n: int, score: float = 0.8):
    return [
        KnowledgeItem(
            id=f"k{i}", provenance=Provenance.EXTERNAL, kind=KnowledgeKind.SOLUTION, source="web_search",
            title=f"item {i}", description=f"description {i}", relevance_score=score,
        )
        for i in range(n)
    ]


@pytest.fixture
def assessor():
    return QualityAssessor()


@pytest.fixture
def rich_project():
    return ProjectContext(
        goals=["Reliable checkout"],
        key_features=["Payments"],
        architecture="FastAPI service on PostgreSQL",
        current_focus=["Login hardening"],
        recent_changes=["Moved sessions to Redis"],
        decisions=[DecisionRecord(title="Use Redis for sessions")],
    )


def test_overall_formula_holds_for_random_scores():
    rng = random.Random(7)
    for _ in range(200):
        c, f, cl = rng.randint(0, 100), rng.randint(0, 100), rng.randint(0, 100)
        assessment = QualityAssessment.from_scores(c, f, cl)
        assert assessment.overall == round(0.4 * c + 0.35 * f + 0.25 * cl)


def test_overall_cannot_be_set_inconsistently():
    with pytest.raises(ValidationError):
        QualityAssessment(completeness=50, feasibility=50, clarity=50, overall=90)


def test_assessment_is_frozen():
    assessment = QualityAssessment.from_scores(50, 50, 50)
    with pytest.raises(ValidationError):
        assessment.overall = 99


def test_bugfix_without_context_cannot_proceed(assessor):
    assessment = assessor.assess(_package())

    assert assessment.completeness == 52
    assert assessment.feasibility == 45
    assert assessment.clarity == 88
    assert assessment.overall == weighted_overall(52, 45, 88) == 59
    assert assessment.can_proceed is False
    assert assessment.confidence == ConfidenceLevel.LOW
    assert "reproduction steps" in assessment.missing_information
    assert MISSING_KNOWLEDGE in assessment.missing_information
    assert supplement("reproduction steps") in assessment.optimization_suggestions
    assert SUGGEST_BUGFIX_DETAILS in assessment.optimization_suggestions
    assert "completeness 52/100" in assessment.rationale


def test_well_supported_bugfix_can_proceed(assessor, rich_project):
    memory = [MemoryEntry(user_input="earlier"), MemoryEntry(user_input="before that")]
    package = _package(
        user_input=(
            "Fix the null pointer exception in the login handler. Expected the user to be redirected. "
            "Steps to reproduce: submit an empty form on Python 3.12."
        ),
        project_context=rich_project,
        relevant_knowledge=_knowledge(5),
        available_tools=[*BASELINE_TOOLS, PROVIDER_TOOLS["code_index_search"]],
        short_term_memory=memory,
    )

    assessment = assessor.assess(package)

    assert assessment.can_proceed is True
    assert assessment.overall >= 85
    assert assessment.confidence == ConfidenceLevel.HIGH
    assert assessment.missing_information == []


@pytest.mark.parametrize(
    "overall_inputs,missing_count,expected",
    [
        ((100, 100, 100), 0, ConfidenceLevel.HIGH),
        ((100, 100, 100), 2, ConfidenceLevel.MEDIUM),
        ((75, 75, 75), 3, ConfidenceLevel.MEDIUM),
        ((75, 75, 75), 4, ConfidenceLevel.LOW),
        ((60, 60, 60), 0, ConfidenceLevel.LOW),
    ],
)
def test_confidence_tiers(assessor, overall_inputs, missing_count, expected):
    overall = weighted_overall(*overall_inputs)
    assert assessor.confidence(overall, missing_count) == expected


def test_fallback_completeness_is_capped(assessor, rich_project):
    package = _package(project_context=rich_project, relevant_knowledge=_knowledge(3), is_fallback=True)

    assert assessor.assess(package).completeness == 30


def test_missing_tools_and_short_input_are_critical(assessor, rich_project):
    package = _package(
        user_input="fix it",
        project_context=rich_project,
        relevant_knowledge=_knowledge(5),
        available_tools=[],
    )

    assessment = assessor.assess(package)

    assert MISSING_REQUEST in assessment.missing_information
    assert MISSING_TOOLS in assessment.missing_information
    assert assessment.can_proceed is False


def test_overload_and_stale_memory_are_flagged(assessor):
    old = utcnow() - timedelta(days=10)
    package = _package(
        relevant_knowledge=_knowledge(30),
        short_term_memory=[MemoryEntry(user_input=f"m{i}", timestamp=old) for i in range(25)],
    )

    assessment = assessor.assess(package)

    assert ISSUE_OVERLOAD in assessment.potential_issues
    assert ISSUE_STALE in assessment.potential_issues
    assert SUGGEST_PRUNE in assessment.optimization_suggestions
    assert SUGGEST_REFRESH_MEMORY in assessment.optimization_suggestions
    assert MISSING_HISTORY not in assessment.missing_information


def test_missing_capabilities_reported(assessor):
    assessment = assessor.assess(_package())

    assert "Missing capabilities: code search" in assessment.potential_issues


def test_low_relevance_knowledge_hurts_consistency(assessor, rich_project):
    strong = assessor.consistency(_package(project_context=rich_project, relevant_knowledge=_knowledge(4, 0.9)))
    weak = assessor.consistency(_package(project_context=rich_project, relevant_knowledge=_knowledge(4, 0.1)))

    assert strong == 100
    assert weak == 80


def test_assessment_is_deterministic(assessor, rich_project):
    package = _package(project_context=rich_project, relevant_knowledge=_knowledge(2))

    first = assessor.assess(package)
    second = assessor.assess(package)

    assert first == second


@pytest.mark.parametrize(
    "task_type,text,expected",
    [
        (TaskType.ARCHITECTURE, "design the service layout", 9),
        (TaskType.ARCHITECTURE, "design a complex distributed system", 10),
        (TaskType.BUGFIX, "simple typo fix", 3),
        (TaskType.PROGRESS, "x" * 250, 4),
    ],
)
def test_task_complexity(assessor, task_type, text, expected):
    package = _package(task_type=task_type, user_input=text)
    assert assessor.task_complexity(package) == expected
