import pytest

from context_engine import ContextEngine, TaskRequest, TaskType, create_engine
from context_engine.domain.context.context_assembler import SUMMARY_ACTION
from context_engine.domain.models.context_package import MemoryEntry, utcnow
from context_engine.infrastructure.config.settings import EngineSettings
from context_engine.infrastructure.observability.events import (
    InMemoryEventRecorder,
    StructlogEventRecorder,
)


def _request(**overrides):
    fields = dict(task_type=TaskType.BUGFIX, user_input="fix null pointer in login", session_id="s1")
    fields.update(overrides)
    return TaskRequest(**fields)


@pytest.mark.asyncio
async def test_bugfix_without_context_reaches_refinement_cap(settings, events):
    async with ContextEngine(settings, events=events) as engine:
        result = await engine.build(_request())

    assert result.assessment.overall == 59
    assert result.assessment.can_proceed is False
    assert result.passes == settings.optimization.max_refinements + 1
    assert result.package.quality_report == result.assessment
    assert "reproduction steps" in result.assessment.missing_information
    assert events.named("optimization.done")


@pytest.mark.asyncio
async def test_build_is_recorded_once_and_replayed(settings, events):
    engine = ContextEngine(settings, events=events)

    await engine.build(_request())
    entries = await engine.memory.get_short_term("s1")
    replay = await engine.build(_request())

    assert len(entries) == 1
    assert entries[0].actions[0].action == SUMMARY_ACTION
    assert len(replay.package.short_term_memory) == 1
    assert replay.package.action_history[0].action == SUMMARY_ACTION


@pytest.mark.asyncio
async def test_build_uses_project_documents(workspace, events):
    engine = ContextEngine(EngineSettings(project_root=workspace), events=events)

    result = await engine.build(_request(task_type=TaskType.FEATURE, user_input="add redis session expiry"))

    assert result.package.project_context.goals
    assert any(item.source == "project_docs" for item in result.package.relevant_knowledge)


@pytest.mark.asyncio
async def test_memory_persists_under_project_root(settings, events):
    async with ContextEngine(settings, events=events) as engine:
        await engine.build(_request())

    assert list((settings.memory_dir / "short-term").glob("*.json"))

    reloaded = ContextEngine(settings, events=InMemoryEventRecorder())
    assert len(await reloaded.memory.get_short_term("s1")) == 1


@pytest.mark.asyncio
async def test_cleanup_memory(settings, events):
    engine = ContextEngine(settings, events=events)
    await engine.memory.record_interaction("s1", MemoryEntry(user_input="stale", timestamp=utcnow().replace(year=2000)))

    assert await engine.cleanup_memory(older_than_days=7) == 1
    assert await engine.memory.get_short_term("s1") == []


def test_create_engine_configures_defaults(settings):
    engine = create_engine(settings)

    assert isinstance(engine.events, StructlogEventRecorder)
    assert engine.loop.config.max_refinements == 2
