from typing import Optional
import structlog
import time

from context_engine.domain.context.context_assembler import ContextAssembler
from context_engine.domain.context.context_ranker import ContextRanker, KeywordRelevanceStrategy, RelevanceStrategy
from context_engine.domain.context.memory.memory_store import MemoryStore
from context_engine.domain.context.memory.preference_learner import PreferenceStrategy
from context_engine.domain.context.project_context import ProjectContextReader, ProjectDocumentSearch
from context_engine.domain.context.providers import ExternalProviders
from context_engine.domain.context.quality_assessor import QualityAssessor
from context_engine.domain.context.source_integrator import SourceIntegrator
from context_engine.domain.models.context_package import ContextResult, TaskRequest
from context_engine.domain.orchestration.optimization_loop import OptimizationLoop
from context_engine.domain.tool.tool_registry import ToolCatalog
from context_engine.infrastructure.config.settings import EngineSettings
from context_engine.infrastructure.observability.events import EventRecorder, StructlogEventRecorder
from context_engine.infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


class ContextEngine:
    """Process-level service wiring the context pipeline together.

    Construct once at startup, pass it to request handlers, and close it at
    shutdown so pending memory state is flushed.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        providers: Optional[ExternalProviders] = None,
        events: Optional[EventRecorder] = None,
        relevance: Optional[RelevanceStrategy] = None,
        preferences: Optional[PreferenceStrategy] = None,
        assessor: Optional[QualityAssessor] = None,
    ):
        self.settings = settings or EngineSettings()
        self.providers = providers or ExternalProviders()
        self.events = events or StructlogEventRecorder()

        relevance = relevance or KeywordRelevanceStrategy(
            self.settings.sources.weights, self.settings.sources.recency_half_life_days
        )
        context_dir = self.settings.context_dir

        self.memory = MemoryStore(
            self.settings.memory,
            storage_dir=self.settings.memory_dir,
            strategy=preferences,
            events=self.events,
        )
        self.sources = SourceIntegrator(
            self.settings.sources,
            document_search=ProjectDocumentSearch(context_dir, self.settings.project_root, relevance),
            providers=self.providers,
            strategy=relevance,
            events=self.events,
            project_root=self.settings.project_root,
        )
        self.tools = ToolCatalog(self.providers, ContextRanker())
        self.assembler = ContextAssembler(
            self.memory,
            self.sources,
            self.tools,
            project_reader=ProjectContextReader(context_dir),
            memory_config=self.settings.memory,
            source_config=self.settings.sources,
            events=self.events,
        )
        self.loop = OptimizationLoop(
            self.assembler,
            assessor=assessor or QualityAssessor(),
            config=self.settings.optimization,
            events=self.events,
        )

    async def build(self, request: TaskRequest) -> ContextResult:
        """Assemble, score and refine a context package, then record the build in memory"""

        start_time = time.time()
        structlog.contextvars.bind_contextvars(session_id=request.session_id, task_type=request.task_type.value)
        try:
            result = await self.loop.run(request)
            duration_ms = (time.time() - start_time) * 1000
            await self.assembler.record_summary(result.package, result.assessment, duration_ms)
        finally:
            structlog.contextvars.unbind_contextvars("session_id", "task_type")

        logger.info(
            "Context built",
            session_id=request.session_id,
            overall=result.assessment.overall,
            can_proceed=result.assessment.can_proceed,
            passes=result.passes,
        )
        return result

    async def cleanup_memory(self, older_than_days: Optional[int] = None) -> int:
        """Remove short-term memory older than the cutoff"""

        return await self.memory.cleanup(older_than_days)

    async def aclose(self):
        """Flush memory state to storage"""

        await self.memory.flush()
        logger.info("Context engine closed")

    async def __aenter__(self) -> "ContextEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()


def create_engine(
    settings: Optional[EngineSettings] = None,
    providers: Optional[ExternalProviders] = None,
) -> ContextEngine:
    """Configure logging from settings and construct the engine"""

    settings = settings or EngineSettings()
    setup_logging(settings.logging.level, settings.logging.format, settings.logging.service_name)
    return ContextEngine(settings, providers)
