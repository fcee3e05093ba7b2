import asyncio
import time
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from context_engine.domain.context.context_ranker import KeywordRelevanceStrategy
from context_engine.domain.context.project_context import ProjectDocumentSearch
from context_engine.domain.context.providers import ExternalProviders
from context_engine.domain.context.source_integrator import (
    SourceIntegrator,
    build_web_query,
    code_shape,
    file_patterns,
    mentioned_libraries,
)
from context_engine.domain.models.context_package import (
    KnowledgeItem,
    KnowledgeKind,
    Provenance,
    TaskType,
    utcnow,
)
from context_engine.infrastructure.config.settings import SourceConfig


def _item(item_id, title, description, score, provenance=Provenance.EXTERNAL, tags=None):
    return KnowledgeItem(
        id=item_id,
        provenance=provenance,
        kind=KnowledgeKind.SOLUTION,
        source="web_search",
        title=title,
        description=description,
        relevance_score=score,
        tags=tags or [],
    )


def _web_hit(title, score, snippet="snippet"):
    return {"title": title, "url": f"https://example.com/{title}", "snippet": snippet, "relevance_score": score}


def _code_hit(code, language="python", score=0.9, path="app/service.py"):
    return {"file_path": path, "code": code, "language": language, "relevance_score": score}


@pytest.fixture
def web_search():
    return AsyncMock(return_value=[
        _web_hit("Null pointer checks in login handlers", 0.9, "Guard the user object before access"),
        _web_hit("Low quality result", 0.5),
    ])


def test_deduplicate_keeps_higher_score_and_union_of_tags():
    items = [
        _item("a", "Retry  Policy", "Backoff for flaky calls", 0.4, tags=["web-search"]),
        _item("b", "retry policy", "backoff for flaky calls", 0.8, tags=["library-docs"]),
    ]

    merged = SourceIntegrator.deduplicate(items)

    assert len(merged) == 1
    assert merged[0].id == "b"
    assert merged[0].relevance_score == 0.8
    assert set(merged[0].tags) == {"web-search", "library-docs"}


def test_merge_ranks_and_caps_each_provenance():
    integrator = SourceIntegrator(SourceConfig(max_knowledge_items=3))
    items = [_item(f"e{i}", f"external {i}", "", i / 10) for i in range(6)]
    items += [_item(f"i{i}", f"internal {i}", "", i / 10 + 0.05, provenance=Provenance.INTERNAL) for i in range(5)]

    merged = integrator.merge(items, cap=3)

    scores = [item.relevance_score for item in merged]
    assert scores == sorted(scores, reverse=True)
    assert sum(1 for item in merged if item.provenance == Provenance.EXTERNAL) == 3
    assert sum(1 for item in merged if item.provenance == Provenance.INTERNAL) == 3
    assert {item.id for item in merged} == {"e5", "e4", "e3", "i4", "i3", "i2"}


@pytest.mark.asyncio
async def test_no_providers_yields_empty_collection(events):
    integrator = SourceIntegrator(SourceConfig(), events=events)

    collection = await integrator.collect("fix null pointer in login", TaskType.BUGFIX)

    assert collection.knowledge_items == []
    assert collection.code_patterns == []
    assert collection.warnings == []
    assert events.named("sources.collected")


@pytest.mark.asyncio
async def test_web_results_are_filtered_and_normalized(web_search):
    integrator = SourceIntegrator(SourceConfig(), providers=ExternalProviders(web_search=web_search))

    collection = await integrator.collect("fix null pointer in login", TaskType.BUGFIX)

    web_search.assert_awaited_once_with(build_web_query("fix null pointer in login", TaskType.BUGFIX))
    assert len(collection.knowledge_items) == 1
    item = collection.knowledge_items[0]
    assert item.provenance == Provenance.EXTERNAL
    assert item.source == "web_search"
    assert "external" in item.tags and "bugfix" in item.tags
    assert 0.0 < item.relevance_score <= 1.0


@pytest.mark.asyncio
async def test_external_sources_can_be_disabled(web_search):
    integrator = SourceIntegrator(
        SourceConfig(enable_external=False), providers=ExternalProviders(web_search=web_search)
    )

    collection = await integrator.collect("anything", TaskType.GENERAL)

    web_search.assert_not_awaited()
    assert collection.knowledge_items == []


@pytest.mark.asyncio
async def test_timed_out_source_contributes_nothing(web_search, events):
    async def never_returns(query):
        await asyncio.sleep(10)
        return []

    integrator = SourceIntegrator(
        SourceConfig(per_source_timeout=0.1),
        providers=ExternalProviders(web_search=web_search, code_index_search=never_returns),
        events=events,
    )

    start = time.monotonic()
    collection = await integrator.collect("fix null pointer in login", TaskType.BUGFIX)
    elapsed = time.monotonic() - start

    assert elapsed < 1.0
    assert len(collection.knowledge_items) == 1
    assert collection.code_patterns == []
    assert len(collection.warnings) == 1
    assert collection.warnings[0].startswith("code_search unavailable")
    assert events.named("sources.source_failed")[0].data["source"] == "code_search"


@pytest.mark.asyncio
async def test_failing_and_malformed_sources_become_warnings(web_search):
    broken_files = AsyncMock(side_effect=RuntimeError("index offline"))
    malformed_docs = AsyncMock(return_value=[{"unexpected": "shape"}])

    integrator = SourceIntegrator(
        SourceConfig(),
        providers=ExternalProviders(
            web_search=web_search, file_search=broken_files, library_doc_search=malformed_docs
        ),
    )

    collection = await integrator.collect("use react hooks", TaskType.FEATURE)

    assert len(collection.knowledge_items) == 1
    assert len(collection.warnings) == 2
    assert any("file_search" in w and "index offline" in w for w in collection.warnings)
    assert any("library_docs" in w for w in collection.warnings)


@pytest.mark.asyncio
async def test_library_docs_queried_per_mentioned_library():
    library_docs = AsyncMock(return_value=[
        {"library": "react", "section": "Hooks", "content": "useEffect runs after render", "relevance_score": 0.9}
    ])
    integrator = SourceIntegrator(SourceConfig(), providers=ExternalProviders(library_doc_search=library_docs))

    collection = await integrator.collect("react and redis caching", TaskType.FEATURE)

    called = sorted(call.args[0] for call in library_docs.await_args_list)
    assert called == ["react", "redis"]
    # Same title and description from both calls collapse into one item
    assert len(collection.knowledge_items) == 1
    assert collection.knowledge_items[0].kind == KnowledgeKind.EXAMPLE


@pytest.mark.asyncio
async def test_file_search_items_are_internal(tmp_path):
    file_search = AsyncMock(return_value=[
        {"file_path": "src/login.test.ts", "file_name": "login.test.ts", "relevance_score": 0.8}
    ])
    integrator = SourceIntegrator(
        SourceConfig(), providers=ExternalProviders(file_search=file_search), project_root=tmp_path
    )

    collection = await integrator.collect("fix login", TaskType.BUGFIX)

    patterns = [call.args[0] for call in file_search.await_args_list]
    assert patterns == file_patterns(TaskType.BUGFIX)
    assert all(call.args[1] == str(tmp_path) for call in file_search.await_args_list)
    assert collection.knowledge_items
    assert all(item.provenance == Provenance.INTERNAL for item in collection.knowledge_items)


@pytest.mark.asyncio
async def test_code_patterns_promote_repeated_shapes():
    code_search = AsyncMock(return_value=[
        _code_hit("def get_user(user_id: int) -> User:"),
        _code_hit("def get_order(order_id: int) -> Order:"),
        _code_hit("class LoginHandler(BaseHandler):"),
        _code_hit("function fetchUser(id) {", language="javascript"),
    ])
    integrator = SourceIntegrator(SourceConfig(), providers=ExternalProviders(code_index_search=code_search))

    collection = await integrator.collect("get user by id", TaskType.BUGFIX)

    assert len(collection.code_patterns) == 1
    pattern = collection.code_patterns[0]
    assert pattern.language == "python"
    assert pattern.application_count == 2
    assert pattern.category == "coding"
    assert pattern.code_example.startswith("def get_")
    # Code hits feed patterns, not knowledge items
    assert collection.knowledge_items == []


@pytest.mark.asyncio
async def test_project_documents_are_searched(workspace):
    search = ProjectDocumentSearch(
        workspace / "context-engineering", workspace, KeywordRelevanceStrategy()
    )
    integrator = SourceIntegrator(SourceConfig(), document_search=search)

    collection = await integrator.collect("redis sessions", TaskType.ARCHITECTURE)

    assert collection.knowledge_items
    assert all(item.provenance == Provenance.INTERNAL for item in collection.knowledge_items)
    assert all(item.source == "project_docs" for item in collection.knowledge_items)


def test_query_helpers():
    assert build_web_query("fix login", TaskType.BUGFIX) == "fix login bugfix programming development"
    assert mentioned_libraries("Use React with Prisma") == ["react", "prisma"]
    assert mentioned_libraries("nothing here") == []
    assert file_patterns(TaskType.FEATURE) == ["*.component.*", "*.service.*", "*.controller.*"]
    assert file_patterns(TaskType.PROGRESS) == ["*.*"]
    assert code_shape('x = call("a", 3)') == code_shape('y = other("b", 4)')


@pytest.mark.asyncio
async def test_older_file_hits_rank_below_newer_ones():
    file_search = AsyncMock(return_value=[
        {"file_path": "src/cart_old.py", "file_name": "cart_old.py", "relevance_score": 0.8,
         "last_modified": (utcnow() - timedelta(days=365)).isoformat()},
        {"file_path": "src/cart_new.py", "file_name": "cart_new.py", "relevance_score": 0.8,
         "last_modified": utcnow().isoformat()},
    ])
    integrator = SourceIntegrator(SourceConfig(), providers=ExternalProviders(file_search=file_search))

    collection = await integrator.collect("cart totals", TaskType.GENERAL)

    newer, older = collection.knowledge_items
    assert newer.title == "Project file: cart_new.py"
    assert older.title == "Project file: cart_old.py"
    assert newer.relevance_score > older.relevance_score


@pytest.mark.asyncio
async def test_file_hit_without_timezone_is_read_as_utc():
    file_search = AsyncMock(return_value=[
        {"file_path": "src/cart.py", "file_name": "cart.py", "relevance_score": 0.8,
         "last_modified": "2020-01-01T00:00:00"},
    ])
    integrator = SourceIntegrator(SourceConfig(), providers=ExternalProviders(file_search=file_search))

    collection = await integrator.collect("cart totals", TaskType.GENERAL)

    assert "Last modified: 2020-01-01T00:00:00+00:00" in collection.knowledge_items[0].content
