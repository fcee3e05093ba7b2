from typing import TypedDict, List, Dict, Any, Optional
from langgraph.graph import StateGraph, END
import structlog
import time

from context_engine.domain.context.context_assembler import ContextAssembler
from context_engine.domain.context.quality_assessor import (
    MISSING_ARCHITECTURE,
    MISSING_GOALS,
    MISSING_HISTORY,
    MISSING_KNOWLEDGE,
    MISSING_REQUEST,
    MISSING_TOOLS,
    QualityAssessor,
    STALE_AFTER_DAYS,
    SUGGEST_ARCHITECTURE_HISTORY,
    SUGGEST_BUGFIX_DETAILS,
    SUGGEST_EXTERNAL_SEARCH,
    SUGGEST_FEATURE_CRITERIA,
    SUGGEST_PRUNE,
    SUGGEST_RECORD_HISTORY,
    SUGGEST_REFRESH_MEMORY,
    SUPPLEMENT_PREFIX,
)
from context_engine.domain.models.context_package import (
    ContextPackage,
    ContextResult,
    QualityAssessment,
    TaskRequest,
)
from context_engine.infrastructure.config.settings import OptimizationConfig
from context_engine.infrastructure.observability.events import EventRecorder

logger = structlog.get_logger(__name__)

# Remediation names, applied in this order within a refinement
PRUNE = "prune"
DROP_STALE_MEMORY = "drop_stale_memory"
REFRESH_MEMORY = "refresh_memory"
REFRESH_PROJECT_CONTEXT = "refresh_project_context"
REFRESH_TOOLS = "refresh_tools"
SEARCH_KNOWLEDGE = "search_knowledge"
REFETCH_GAPS = "refetch_gaps"

REMEDIATION_ORDER = [
    PRUNE, DROP_STALE_MEMORY, REFRESH_MEMORY, REFRESH_PROJECT_CONTEXT,
    REFRESH_TOOLS, SEARCH_KNOWLEDGE, REFETCH_GAPS,
]

# None means the gap can only be closed by the caller
GAP_REMEDIATIONS: Dict[str, Optional[str]] = {
    MISSING_GOALS: REFRESH_PROJECT_CONTEXT,
    MISSING_ARCHITECTURE: REFRESH_PROJECT_CONTEXT,
    MISSING_HISTORY: REFRESH_MEMORY,
    MISSING_TOOLS: REFRESH_TOOLS,
    MISSING_KNOWLEDGE: SEARCH_KNOWLEDGE,
    MISSING_REQUEST: None,
}

SUGGESTION_REMEDIATIONS: Dict[str, str] = {
    SUGGEST_PRUNE: PRUNE,
    SUGGEST_REFRESH_MEMORY: DROP_STALE_MEMORY,
    SUGGEST_RECORD_HISTORY: REFRESH_MEMORY,
    SUGGEST_EXTERNAL_SEARCH: SEARCH_KNOWLEDGE,
    SUGGEST_ARCHITECTURE_HISTORY: REFRESH_PROJECT_CONTEXT,
    SUGGEST_FEATURE_CRITERIA: SEARCH_KNOWLEDGE,
    SUGGEST_BUGFIX_DETAILS: SEARCH_KNOWLEDGE,
}


class LoopState(TypedDict):
    """State for the refinement graph"""
    request: TaskRequest
    package: Optional[ContextPackage]
    assessment: Optional[QualityAssessment]
    best_package: Optional[ContextPackage]
    best_assessment: Optional[QualityAssessment]
    iteration: int
    passes: int
    trace: List[str]


class OptimizationLoop:
    """Scores a package and refines it until it can proceed or the refinement cap is reached"""

    def __init__(
        self,
        assembler: ContextAssembler,
        assessor: Optional[QualityAssessor] = None,
        config: Optional[OptimizationConfig] = None,
        events: Optional[EventRecorder] = None,
    ):
        self.assembler = assembler
        self.assessor = assessor or QualityAssessor()
        self.config = config or OptimizationConfig()
        self.events = events or EventRecorder()
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the assemble -> score -> refine graph"""

        workflow = StateGraph(LoopState)

        workflow.add_node("assemble", self.assemble_node)
        workflow.add_node("score", self.score_node)
        workflow.add_node("refine", self.refine_node)

        workflow.set_entry_point("assemble")
        workflow.add_edge("assemble", "score")

        workflow.add_conditional_edges(
            "score",
            self.route_after_scoring,
            {
                "refine": "refine",
                "done": END,
            }
        )

        workflow.add_edge("refine", "score")

        return workflow.compile()

    async def run(self, request: TaskRequest, initial_package: Optional[ContextPackage] = None) -> ContextResult:
        """Run the loop and return the best package seen with its assessment"""

        initial_state: LoopState = {
            "request": request,
            "package": initial_package,
            "assessment": None,
            "best_package": None,
            "best_assessment": None,
            "iteration": 0,
            "passes": 0,
            "trace": [],
        }

        # assemble + (max_refinements + 1) scores + max_refinements refines
        recursion_limit = 2 * self.config.max_refinements + 5
        final_state = await self.workflow.ainvoke(initial_state, config={"recursion_limit": recursion_limit})

        best_assessment: QualityAssessment = final_state["best_assessment"]
        best_package = final_state["best_package"].model_copy(update={"quality_report": best_assessment})

        self.events.emit(
            "optimization.done",
            session_id=request.session_id,
            passes=final_state["passes"],
            best_overall=best_assessment.overall,
            can_proceed=best_assessment.can_proceed,
        )
        logger.info(
            "Context optimization finished",
            session_id=request.session_id,
            passes=final_state["passes"],
            overall=best_assessment.overall,
            can_proceed=best_assessment.can_proceed,
        )

        return ContextResult(
            package=best_package,
            assessment=best_assessment,
            passes=final_state["passes"],
            trace=final_state["trace"],
        )

    async def assemble_node(self, state: LoopState) -> Dict[str, Any]:
        """Produce the first package unless one was supplied"""

        if state["package"] is not None:
            return {"trace": state["trace"] + ["assemble:supplied"]}

        package = await self.assembler.assemble_request(state["request"])
        return {"package": package, "trace": state["trace"] + ["assemble"]}

    async def score_node(self, state: LoopState) -> Dict[str, Any]:
        """Assess the current package and keep it if it beats the best so far"""

        start_time = time.time()
        package = state["package"]
        assessment = self.assessor.assess(package)
        passes = state["passes"] + 1

        update: Dict[str, Any] = {
            "assessment": assessment,
            "passes": passes,
            "trace": state["trace"] + [f"score:{assessment.overall}"],
        }
        best = state["best_assessment"]
        if best is None or assessment.overall > best.overall:
            update["best_package"] = package
            update["best_assessment"] = assessment

        self.events.emit(
            "optimization.pass",
            session_id=package.session_id,
            pass_number=passes,
            iteration=state["iteration"],
            overall=assessment.overall,
            completeness=assessment.completeness,
            feasibility=assessment.feasibility,
            clarity=assessment.clarity,
            can_proceed=assessment.can_proceed,
            duration_ms=(time.time() - start_time) * 1000,
        )
        return update

    def route_after_scoring(self, state: LoopState) -> str:
        """Stop once the package can proceed or the refinement budget is spent"""

        if state["assessment"].can_proceed:
            return "done"
        if state["iteration"] >= self.config.max_refinements:
            return "done"
        return "refine"

    async def refine_node(self, state: LoopState) -> Dict[str, Any]:
        """Apply targeted re-fetches and named remediations to produce a new package"""

        package = state["package"]
        assessment = state["assessment"]
        remediations, gaps = self.plan_remediations(package, assessment)

        for name in REMEDIATION_ORDER:
            if name not in remediations:
                continue
            try:
                package = await self._apply(name, package, gaps)
            except Exception as e:
                logger.warning("Remediation failed", remediation=name, session_id=package.session_id, error=str(e))

        return {
            "package": package,
            "iteration": state["iteration"] + 1,
            "trace": state["trace"] + [f"refine:{','.join(n for n in REMEDIATION_ORDER if n in remediations)}"],
        }

    def plan_remediations(self, package: ContextPackage, assessment: QualityAssessment):
        """Map missing information and suggestions to remediation names"""

        remediations = set()
        gaps: List[str] = []

        for label in assessment.missing_information:
            if label in GAP_REMEDIATIONS:
                remediation = GAP_REMEDIATIONS[label]
                if remediation is not None:
                    remediations.add(remediation)
            else:
                gaps.append(label)

        if gaps:
            remediations.add(REFETCH_GAPS)

        for suggestion in assessment.optimization_suggestions:
            if suggestion.startswith(SUPPLEMENT_PREFIX):
                # Mirrors a missing-information label handled above
                continue
            remediation = SUGGESTION_REMEDIATIONS.get(suggestion)
            if remediation is None:
                logger.info("Skipping unknown suggestion", suggestion=suggestion, session_id=package.session_id)
                self.events.emit("optimization.remediation_skipped", suggestion=suggestion)
                continue
            remediations.add(remediation)

        return remediations, gaps

    async def _apply(self, name: str, package: ContextPackage, gaps: List[str]) -> ContextPackage:
        if name == PRUNE:
            return self.assembler.prune(package, self.config.prune_threshold)
        if name == DROP_STALE_MEMORY:
            return await self.assembler.refresh_memory(package, drop_older_than_days=STALE_AFTER_DAYS)
        if name == REFRESH_MEMORY:
            return await self.assembler.refresh_memory(package)
        if name == REFRESH_PROJECT_CONTEXT:
            return await self.assembler.refresh_project_context(package)
        if name == REFRESH_TOOLS:
            return await self.assembler.refresh_tools(package)
        if name == SEARCH_KNOWLEDGE:
            return await self.assembler.refetch_knowledge(package)
        if name == REFETCH_GAPS:
            return await self.assembler.refetch_knowledge(package, gaps)
        return package
