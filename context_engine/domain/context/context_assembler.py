from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple
from datetime import timedelta
import asyncio
import time

import structlog

from context_engine.domain.models.context_package import (
    ActionRecord,
    CodePattern,
    ContextPackage,
    MemoryEntry,
    Priority,
    ProjectContext,
    QualityAssessment,
    SourceCollection,
    TaskRequest,
    TaskType,
    UserProfile,
    utcnow,
)
from context_engine.domain.tool.tool_registry import ToolCatalog
from context_engine.infrastructure.config.settings import MemoryConfig, SourceConfig
from context_engine.infrastructure.observability.events import EventRecorder
from .memory.memory_store import MemoryStore
from .project_context import ProjectContextReader
from .source_integrator import SourceIntegrator

logger = structlog.get_logger(__name__)

BASELINE_INSTRUCTIONS = [
    "You are a software development assistant that uses the assembled project context to give accurate, relevant help.",
    "The context holds project information, user preferences, history and related knowledge; use all of it.",
    "Take the user's coding style, the project goals and the existing architecture patterns into account.",
    "If the context is not enough to complete the task, state explicitly which information is missing.",
]

TASK_INSTRUCTIONS: Dict[TaskType, List[str]] = {
    TaskType.ARCHITECTURE: [
        "Focus on the long-term impact and scalability of architectural choices.",
        "Keep changes consistent with the existing architecture patterns and stack.",
        "Evaluate how an architectural change affects the other components.",
    ],
    TaskType.FEATURE: [
        "Make sure the new feature fits the project goals and existing features.",
        "Consider user experience and performance impact.",
        "Provide clear implementation steps and a testing strategy.",
    ],
    TaskType.BUGFIX: [
        "Focus on the root cause of the problem rather than its symptoms.",
        "Consider the impact of the fix on other functionality.",
        "Suggest how to prevent similar problems in the future.",
    ],
    TaskType.REFACTOR: [
        "Keep behaviour unchanged and focus on improving code quality.",
        "Consider the effect of the refactoring on collaboration and maintenance.",
        "Make sure the refactored code follows the project's coding standards.",
    ],
    TaskType.DECISION: [
        "Lay out the background of the decision and the factors involved.",
        "Analyse the pros, cons and long-term impact of each option.",
        "Recommend the best option based on the project context.",
    ],
    TaskType.PROGRESS: [
        "Give an accurate progress assessment and track milestones.",
        "Identify potential blockers and risks.",
        "Suggest ways to improve the workflow.",
    ],
    TaskType.GENERAL: [
        "Adapt the approach to the specific nature of the task.",
        "Stay flexible and handle any kind of request.",
    ],
}

SUMMARY_ACTION = "build-dynamic-context"


def system_instructions(task_type: TaskType) -> List[str]:
    """Baseline directives followed by the directives for the task category"""
    return [*BASELINE_INSTRUCTIONS, *TASK_INSTRUCTIONS[task_type]]


class ContextAssembler:
    """Assembles context packages from project data, memory, knowledge sources and tools"""

    def __init__(
        self,
        memory: MemoryStore,
        sources: SourceIntegrator,
        tools: ToolCatalog,
        project_reader: Optional[ProjectContextReader] = None,
        memory_config: Optional[MemoryConfig] = None,
        source_config: Optional[SourceConfig] = None,
        events: Optional[EventRecorder] = None,
    ):
        self.memory = memory
        self.sources = sources
        self.tools = tools
        self.project_reader = project_reader
        self.memory_config = memory_config or MemoryConfig()
        self.source_config = source_config or SourceConfig()
        self.events = events or EventRecorder()

    async def assemble(
        self,
        task_type: TaskType,
        user_input: str,
        priority: Priority = Priority.MEDIUM,
        session_id: str = "default",
        user_id: str = "default",
    ) -> ContextPackage:
        """Build a context package, degrading to the fallback package when every source fails"""

        # Contract errors surface here as ValidationError
        request = TaskRequest(
            task_type=task_type, user_input=user_input, priority=priority,
            session_id=session_id, user_id=user_id,
        )
        return await self.assemble_request(request)

    async def assemble_request(self, request: TaskRequest) -> ContextPackage:
        start_time = time.time()
        logger.info("Building context", session_id=request.session_id, task_type=request.task_type.value)

        try:
            package = await self._assemble(request)
        except Exception as e:
            logger.error("Context assembly failed, using fallback", session_id=request.session_id, error=str(e))
            package = self.fallback_package(request, [f"assembly failed: {e}"])

        duration_ms = (time.time() - start_time) * 1000
        self.events.emit(
            "context.assembled",
            duration_ms=duration_ms,
            session_id=request.session_id,
            task_type=request.task_type.value,
            fallback=package.is_fallback,
            **package.item_counts(),
        )
        return package

    async def _assemble(self, request: TaskRequest) -> ContextPackage:
        read_timeout = self.memory_config.read_timeout
        # Bounds the whole collection; each source inside carries its own timeout
        sources_timeout = self.source_config.per_source_timeout + 1.0

        branches: Dict[str, Tuple[Awaitable[Any], float, Any]] = {
            "project_context": (self._read_project_context(), read_timeout, ProjectContext()),
            "short_term_memory": (self.memory.get_short_term(request.session_id), read_timeout, []),
            "long_term_memory": (self.memory.get_long_term(request.user_id), read_timeout, UserProfile(user_id=request.user_id)),
            "sources": (self.sources.collect(request.user_input, request.task_type), sources_timeout, SourceCollection()),
            "available_tools": (self.tools.get_available_tools(request.user_input), read_timeout, []),
            "action_history": (self.memory.get_recent_actions(request.session_id), read_timeout, []),
        }

        names = list(branches)
        outcomes = await asyncio.gather(*(
            self._branch(name, call, timeout, default) for name, (call, timeout, default) in branches.items()
        ))
        results = {name: value for name, (value, _) in zip(names, outcomes)}
        failures = [warning for _, warning in outcomes if warning]

        # Memory and knowledge sources all down means nothing useful was gathered
        data_branches = ["short_term_memory", "long_term_memory", "sources", "action_history"]
        if all(outcomes[names.index(name)][1] for name in data_branches):
            return self.fallback_package(request, failures)

        collection: SourceCollection = results["sources"]
        return ContextPackage(
            task_type=request.task_type,
            priority=request.priority,
            session_id=request.session_id,
            user_id=request.user_id,
            user_input=request.user_input,
            system_instructions=system_instructions(request.task_type),
            project_context=results["project_context"],
            short_term_memory=results["short_term_memory"],
            long_term_memory=results["long_term_memory"],
            relevant_knowledge=collection.knowledge_items,
            related_patterns=collection.code_patterns,
            available_tools=results["available_tools"],
            action_history=results["action_history"],
            warnings=[*failures, *collection.warnings],
        )

    async def _branch(self, name: str, call: Awaitable[Any], timeout: float, default: Any) -> Tuple[Any, Optional[str]]:
        try:
            return await asyncio.wait_for(call, timeout=timeout), None
        except asyncio.TimeoutError:
            reason = f"timed out after {timeout}s"
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"

        logger.warning("Context branch failed", branch=name, reason=reason)
        return default, f"{name} unavailable: {reason}"

    async def _read_project_context(self) -> ProjectContext:
        if self.project_reader is None:
            return ProjectContext()
        return await self.project_reader.read()

    def fallback_package(self, request: TaskRequest, warnings: Optional[List[str]] = None) -> ContextPackage:
        """Minimal well-formed package used when assembly cannot gather anything"""

        return ContextPackage(
            task_type=request.task_type,
            priority=request.priority,
            session_id=request.session_id,
            user_id=request.user_id,
            user_input=request.user_input,
            system_instructions=list(BASELINE_INSTRUCTIONS),
            long_term_memory=UserProfile(user_id=request.user_id),
            warnings=warnings or [],
            is_fallback=True,
        )

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    async def refetch_knowledge(self, package: ContextPackage, gaps: Iterable[str] = ()) -> ContextPackage:
        """Query the sources once per gap and merge the new items into a new package"""

        queries = [f"{package.user_input} {gap}" for gap in gaps] or [package.user_input]
        collections = await asyncio.gather(*(
            self._branch("sources", self.sources.collect(query, package.task_type),
                         self.source_config.per_source_timeout + 1.0, SourceCollection())
            for query in queries
        ))

        knowledge = list(package.relevant_knowledge)
        patterns = list(package.related_patterns)
        warnings = list(package.warnings)
        for collection, failure in collections:
            knowledge.extend(collection.knowledge_items)
            patterns.extend(collection.code_patterns)
            warnings.extend(collection.warnings)
            if failure:
                warnings.append(failure)

        return package.model_copy(update={
            "relevant_knowledge": self.sources.merge(knowledge, self.source_config.max_knowledge_items),
            "related_patterns": self._merge_patterns(patterns),
            "warnings": list(dict.fromkeys(warnings)),
        })

    async def refresh_memory(self, package: ContextPackage, drop_older_than_days: Optional[int] = None) -> ContextPackage:
        """Re-read short-term memory and action history; optionally drop stale entries"""

        timeout = self.memory_config.read_timeout
        (entries, entries_failure), (actions, actions_failure) = await asyncio.gather(
            self._branch("short_term_memory", self.memory.get_short_term(package.session_id), timeout,
                         package.short_term_memory),
            self._branch("action_history", self.memory.get_recent_actions(package.session_id), timeout,
                         package.action_history),
        )

        if drop_older_than_days is not None:
            cutoff = utcnow() - timedelta(days=drop_older_than_days)
            entries = [entry for entry in entries if entry.timestamp >= cutoff]
            actions = [action for action in actions if action.timestamp >= cutoff]

        warnings = [*package.warnings, *(w for w in (entries_failure, actions_failure) if w)]
        return package.model_copy(update={
            "short_term_memory": entries,
            "action_history": actions,
            "warnings": list(dict.fromkeys(warnings)),
        })

    async def refresh_project_context(self, package: ContextPackage) -> ContextPackage:
        project, failure = await self._branch(
            "project_context", self._read_project_context(), self.memory_config.read_timeout,
            package.project_context,
        )
        warnings = [*package.warnings, failure] if failure else package.warnings
        return package.model_copy(update={"project_context": project, "warnings": warnings})

    async def refresh_tools(self, package: ContextPackage) -> ContextPackage:
        tools = await self.tools.get_available_tools(package.user_input)
        return package.model_copy(update={"available_tools": tools})

    def prune(self, package: ContextPackage, threshold: float) -> ContextPackage:
        """Drop knowledge and patterns scoring below the threshold"""

        return package.model_copy(update={
            "relevant_knowledge": [i for i in package.relevant_knowledge if i.relevance_score >= threshold],
            "related_patterns": [p for p in package.related_patterns if p.relevance_score >= threshold],
        })

    def _merge_patterns(self, patterns: List[CodePattern]) -> List[CodePattern]:
        merged: Dict[str, CodePattern] = {}
        for pattern in patterns:
            key = pattern.dedup_key()
            if key not in merged or pattern.relevance_score > merged[key].relevance_score:
                merged[key] = pattern
        ranked = sorted(merged.values(), key=lambda p: p.relevance_score, reverse=True)
        return ranked[:self.source_config.max_knowledge_items]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def record_summary(
        self, package: ContextPackage, assessment: QualityAssessment, duration_ms: float
    ) -> Optional[MemoryEntry]:
        """Record the build as an interaction; failures are logged and never affect the caller"""

        action = ActionRecord(
            action=SUMMARY_ACTION,
            parameters={
                "task_type": package.task_type.value,
                "priority": package.priority.value,
                "session_id": package.session_id,
            },
            result={
                "overall": assessment.overall,
                "completeness": assessment.completeness,
                "can_proceed": assessment.can_proceed,
                "item_counts": package.item_counts(),
            },
            duration_ms=duration_ms,
            success=True,
            context_impact="Fallback context package built" if package.is_fallback else "Full context package built",
        )
        entry = MemoryEntry(
            session_id=package.session_id,
            user_input=package.user_input,
            output=f"Context package built with overall score {assessment.overall}",
            actions=[action],
            context={"task_type": package.task_type.value, "can_proceed": assessment.can_proceed},
        )

        try:
            return await self.memory.record_interaction(package.session_id, entry, user_id=package.user_id)
        except Exception as e:
            logger.warning("Failed to record context summary", session_id=package.session_id, error=str(e))
            return None
