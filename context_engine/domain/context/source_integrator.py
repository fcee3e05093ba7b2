from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple
from collections import Counter, defaultdict
from datetime import datetime
from pathlib import Path
import asyncio
import keyword
import re
import time

import structlog

from context_engine.domain.models.context_package import (
    CodePattern,
    KnowledgeItem,
    KnowledgeKind,
    Provenance,
    SourceCollection,
    TaskType,
)
from context_engine.infrastructure.config.settings import SourceConfig
from context_engine.infrastructure.observability.events import EventRecorder
from .context_ranker import KeywordRelevanceStrategy, RelevanceStrategy
from .project_context import ProjectDocumentSearch
from .providers import (
    CodeSearchHit,
    ExternalProviders,
    FileSearchHit,
    LibraryDocHit,
    WebSearchHit,
    validate_hits,
)

logger = structlog.get_logger(__name__)

KNOWN_LIBRARIES = [
    "react", "vue", "angular", "express", "fastify", "nest", "typescript",
    "mongoose", "sequelize", "prisma", "lodash", "axios", "socket.io",
    "redis", "postgresql", "pydantic", "fastapi", "django", "sqlalchemy",
]

FILE_PATTERNS: Dict[TaskType, List[str]] = {
    TaskType.FEATURE: ["*.component.*", "*.service.*", "*.controller.*"],
    TaskType.BUGFIX: ["*.test.*", "*.spec.*", "*.py", "*.ts"],
    TaskType.ARCHITECTURE: ["*.config.*", "pyproject.toml", "package.json"],
}

PATTERN_CATEGORIES = {
    TaskType.ARCHITECTURE: "architectural",
    TaskType.FEATURE: "design",
    TaskType.DECISION: "design",
}

# Shapes seen at least this often inside one language become patterns
MIN_PATTERN_FREQUENCY = 2

_LITERAL = re.compile(r"(\"[^\"]*\"|'[^']*'|\b\d+(\.\d+)?\b)")
_IDENTIFIER = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]*\b")
_SHAPE_KEYWORDS = set(keyword.kwlist) | {
    "function", "const", "let", "var", "export", "interface", "type", "extends",
    "implements", "new", "this", "public", "private", "static", "fn", "func", "struct",
}


def build_web_query(user_input: str, task_type: TaskType) -> str:
    return f"{user_input} {task_type.value} programming development"


def mentioned_libraries(user_input: str) -> List[str]:
    lowered = user_input.lower()
    return [library for library in KNOWN_LIBRARIES if re.search(rf"(?<!\w){re.escape(library)}(?!\w)", lowered)]


def file_patterns(task_type: TaskType) -> List[str]:
    return FILE_PATTERNS.get(task_type, ["*.*"])


def code_shape(code: str) -> str:
    """Structural shape of a snippet: first line with literals and names abstracted"""

    first_line = next((line.strip() for line in code.splitlines() if line.strip()), "")
    shape = _LITERAL.sub("_", first_line)
    shape = _IDENTIFIER.sub(lambda m: m.group(0) if m.group(0) in _SHAPE_KEYWORDS else "_", shape)
    return re.sub(r"\s+", " ", shape).strip()


class SourceIntegrator:
    """Fans out to internal and external knowledge sources and merges their results"""

    def __init__(
        self,
        config: Optional[SourceConfig] = None,
        document_search: Optional[ProjectDocumentSearch] = None,
        providers: Optional[ExternalProviders] = None,
        strategy: Optional[RelevanceStrategy] = None,
        events: Optional[EventRecorder] = None,
        project_root: Path = Path("."),
    ):
        self.config = config or SourceConfig()
        self.document_search = document_search
        self.providers = providers or ExternalProviders()
        self.strategy = strategy or KeywordRelevanceStrategy(
            self.config.weights, self.config.recency_half_life_days
        )
        self.events = events or EventRecorder()
        self.project_root = project_root

    async def collect(self, query: str, task_type: TaskType, exclude: Iterable[str] = ()) -> SourceCollection:
        """Query every available source in parallel and return merged, ranked results"""

        start_time = time.time()
        excluded = set(exclude)

        branches: Dict[str, Awaitable[List[Any]]] = {}
        if self.document_search is not None and "project_docs" not in excluded:
            branches["project_docs"] = self.document_search.search(query, task_type)

        if self.config.enable_external:
            if self.providers.web_search is not None and "web_search" not in excluded:
                branches["web_search"] = self._search_web(query, task_type)
            if self.providers.code_index_search is not None and "code_search" not in excluded:
                branches["code_search"] = self._search_code(query)
            if self.providers.file_search is not None and "file_search" not in excluded:
                branches["file_search"] = self._search_files(task_type)
            if self.providers.library_doc_search is not None and "library_docs" not in excluded:
                branches["library_docs"] = self._search_library_docs(query, task_type)

        names = list(branches)
        outcomes = await asyncio.gather(*(self._guarded(name, branches[name]) for name in names))

        warnings: List[str] = []
        results: Dict[str, List[Any]] = {}
        for name, (items, warning) in zip(names, outcomes):
            results[name] = items
            if warning:
                warnings.append(warning)

        counts = {name: len(items) for name, items in results.items()}
        code_hits: List[CodeSearchHit] = results.pop("code_search", [])
        knowledge: List[KnowledgeItem] = [item for items in results.values() for item in items]

        collection = SourceCollection(
            knowledge_items=self.merge(knowledge, self.config.max_knowledge_items),
            code_patterns=self.extract_code_patterns(code_hits, task_type, query),
            warnings=warnings,
        )

        duration_ms = (time.time() - start_time) * 1000
        self.events.emit(
            "sources.collected",
            duration_ms=duration_ms,
            counts=counts,
            knowledge=len(collection.knowledge_items),
            patterns=len(collection.code_patterns),
            warnings=warnings,
        )
        return collection

    async def _guarded(self, source: str, call: Awaitable[List[Any]]) -> Tuple[List[Any], Optional[str]]:
        """Run one source under its own timeout; failures become a warning and an empty result"""

        try:
            return await asyncio.wait_for(call, timeout=self.config.per_source_timeout), None
        except asyncio.TimeoutError:
            reason = f"timed out after {self.config.per_source_timeout}s"
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"

        logger.warning("Knowledge source failed", source=source, reason=reason)
        self.events.emit("sources.source_failed", source=source, reason=reason)
        return [], f"{source} unavailable: {reason}"

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def _search_web(self, query: str, task_type: TaskType) -> List[KnowledgeItem]:
        raw = await self.providers.web_search(build_web_query(query, task_type))
        hits = [hit for hit in validate_hits(WebSearchHit, raw) if hit.relevance_score > self.config.web_min_score]

        return [
            self._knowledge_item(
                query,
                source="web_search",
                id=f"web-{index}",
                provenance=Provenance.EXTERNAL,
                kind=KnowledgeKind.SOLUTION,
                title=hit.title,
                description=hit.snippet,
                content=f"Source: {hit.url}\n\n{hit.snippet}" if hit.url else hit.snippet,
                tags=[task_type.value, "external", "web-search"],
                provider_score=hit.relevance_score,
                produced_at=hit.published_at,
            )
            for index, hit in enumerate(hits[:self.config.web_limit])
        ]

    async def _search_code(self, query: str) -> List[CodeSearchHit]:
        raw = await self.providers.code_index_search(query)
        hits = [hit for hit in validate_hits(CodeSearchHit, raw) if hit.relevance_score > self.config.code_min_score]
        return hits[:self.config.code_limit]

    async def _search_files(self, task_type: TaskType) -> List[KnowledgeItem]:
        items = []
        for pattern in file_patterns(task_type):
            raw = await self.providers.file_search(pattern, str(self.project_root))
            hits = [hit for hit in validate_hits(FileSearchHit, raw) if hit.relevance_score > self.config.file_min_score]

            for index, hit in enumerate(hits[:self.config.file_limit]):
                modified = hit.last_modified.isoformat() if hit.last_modified else "unknown"
                items.append(self._knowledge_item(
                    f"{pattern} {hit.file_name}",
                    source="file_search",
                    id=f"file-{pattern}-{index}",
                    provenance=Provenance.INTERNAL,
                    kind=KnowledgeKind.PATTERN,
                    title=f"Project file: {hit.file_name}",
                    description=f"Related project file: {hit.file_path}",
                    content=f"Path: {hit.file_path}\nLast modified: {modified}\nSize: {hit.size} bytes",
                    tags=[task_type.value, "internal", "file-search"],
                    provider_score=hit.relevance_score,
                    produced_at=hit.last_modified,
                ))
        return items

    async def _search_library_docs(self, query: str, task_type: TaskType) -> List[KnowledgeItem]:
        items = []
        for library in mentioned_libraries(query):
            raw = await self.providers.library_doc_search(library, query)
            hits = [hit for hit in validate_hits(LibraryDocHit, raw) if hit.relevance_score > self.config.library_min_score]

            for index, hit in enumerate(hits[:self.config.library_limit]):
                items.append(self._knowledge_item(
                    query,
                    source="library_docs",
                    id=f"lib-{library}-{index}",
                    provenance=Provenance.EXTERNAL,
                    kind=KnowledgeKind.EXAMPLE,
                    title=f"{hit.library} docs: {hit.section}",
                    description=f"Documentation and examples for {hit.library}",
                    content="\n\n".join([hit.content, *hit.examples]).strip(),
                    tags=[task_type.value, "external", "library-docs", library],
                    provider_score=hit.relevance_score,
                ))
        return items

    def _knowledge_item(
        self,
        query: str,
        source: str,
        provider_score: float,
        produced_at: Optional[datetime] = None,
        **fields: Any,
    ) -> KnowledgeItem:
        text = f"{fields['title']}\n{fields['description']}\n{fields['content']}"
        # Providers without a timestamp age from the item's last use
        produced_at = produced_at or fields.get("last_used")
        score = self.strategy.score(query, text, source, produced_at=produced_at, provider_score=provider_score)
        return KnowledgeItem(source=source, relevance_score=score, **fields)

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def merge(self, items: List[KnowledgeItem], cap: int) -> List[KnowledgeItem]:
        """Deduplicate, then rank and cap each provenance separately"""

        deduplicated = self.deduplicate(items)

        ranked: List[KnowledgeItem] = []
        for provenance in Provenance:
            group = [item for item in deduplicated if item.provenance == provenance]
            group.sort(key=lambda item: item.relevance_score, reverse=True)
            ranked.extend(group[:cap])

        # sort() is stable, so ties keep internal items first
        ranked.sort(key=lambda item: item.relevance_score, reverse=True)
        return ranked

    @staticmethod
    def deduplicate(items: List[KnowledgeItem]) -> List[KnowledgeItem]:
        """Merge items sharing a normalized title+description; keep the higher score and all tags"""

        merged: Dict[str, KnowledgeItem] = {}
        for item in items:
            key = item.dedup_key()
            existing = merged.get(key)
            if existing is None:
                merged[key] = item
                continue

            winner, other = (item, existing) if item.relevance_score > existing.relevance_score else (existing, item)
            tags = list(dict.fromkeys([*winner.tags, *other.tags]))
            merged[key] = winner.model_copy(update={"tags": tags})

        return list(merged.values())

    # ------------------------------------------------------------------
    # Code patterns
    # ------------------------------------------------------------------

    def extract_code_patterns(
        self, hits: List[CodeSearchHit], task_type: TaskType, query: str = ""
    ) -> List[CodePattern]:
        """Promote structural shapes repeated within a language into patterns"""

        by_language: Dict[str, List[CodeSearchHit]] = defaultdict(list)
        for hit in hits:
            by_language[hit.language or "unknown"].append(hit)

        category = PATTERN_CATEGORIES.get(task_type, "coding")
        patterns: Dict[str, CodePattern] = {}

        for language, language_hits in by_language.items():
            shapes = Counter()
            examples: Dict[str, CodeSearchHit] = {}
            for hit in language_hits:
                shape = code_shape(hit.code)
                if not shape:
                    continue
                shapes[shape] += 1
                if shape not in examples or hit.relevance_score > examples[shape].relevance_score:
                    examples[shape] = hit

            for index, (shape, frequency) in enumerate(shapes.most_common()):
                if frequency < MIN_PATTERN_FREQUENCY:
                    continue
                example = examples[shape]
                pattern = CodePattern(
                    id=f"pattern-{language}-{index}",
                    name=f"{language} pattern: {shape}",
                    description=f"Structure repeated in {frequency} {language} search results",
                    category=category,
                    language=language,
                    code_example=example.code,
                    use_case=example.context or f"Seen in {example.file_path}",
                    application_count=frequency,
                    relevance_score=self.strategy.score(query, example.code, "code_search",
                                                        provider_score=example.relevance_score),
                )
                key = pattern.dedup_key()
                if key not in patterns or pattern.relevance_score > patterns[key].relevance_score:
                    patterns[key] = pattern

        ranked = sorted(patterns.values(), key=lambda p: p.relevance_score, reverse=True)
        return ranked[:self.config.max_knowledge_items]
