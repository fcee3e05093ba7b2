from typing import Annotated, Dict, Any, List, Optional, Literal
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator
from datetime import datetime, timezone
from enum import Enum
import re
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat timestamps without a timezone as UTC so they compare with stored ones"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class TaskType(str, Enum):
    """Category of the task a context package is assembled for"""
    ARCHITECTURE = "architecture"
    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    DECISION = "decision"
    PROGRESS = "progress"
    GENERAL = "general"


class Priority(str, Enum):
    """Task priority levels"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Outcome(str, Enum):
    """Derived outcome of a recorded interaction"""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"
    UNKNOWN = "unknown"


class Provenance(str, Enum):
    """Where a knowledge item came from"""
    INTERNAL = "internal"
    EXTERNAL = "external"


class KnowledgeKind(str, Enum):
    PATTERN = "pattern"
    SOLUTION = "solution"
    BEST_PRACTICE = "best-practice"
    EXAMPLE = "example"


class ConfidenceLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Fixed weighting of the overall quality score
COMPLETENESS_WEIGHT = 0.4
FEASIBILITY_WEIGHT = 0.35
CLARITY_WEIGHT = 0.25


def weighted_overall(completeness: float, feasibility: float, clarity: float) -> int:
    """Overall quality score shared by every assessment"""
    return round(
        COMPLETENESS_WEIGHT * completeness
        + FEASIBILITY_WEIGHT * feasibility
        + CLARITY_WEIGHT * clarity
    )


def normalize_key(title: str, description: str) -> str:
    """Normalized title+description pair used for deduplication"""
    text = f"{title}\u0000{description}".lower()
    return re.sub(r"\s+", " ", text).strip()


class ActionRecord(BaseModel):
    """A single operation taken while assembling or using a context package"""
    id: str = Field(default_factory=lambda: f"action-{uuid.uuid4().hex[:12]}")
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    action: str = Field(description="Operation name")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: float = 0.0
    success: bool = True
    error_message: Optional[str] = None
    context_impact: str = ""


class DecisionRecord(BaseModel):
    """A prior project decision"""
    title: str
    background: str = ""
    selected_option: str = ""
    reasoning: str = ""


class PatternRecord(BaseModel):
    """A recorded project pattern"""
    name: str
    category: Literal["coding", "architectural", "testing"] = "coding"
    description: str = ""


class ProjectContext(BaseModel):
    """Structured snapshot of the project the task belongs to"""
    goals: List[str] = Field(default_factory=list)
    key_features: List[str] = Field(default_factory=list)
    architecture: str = ""
    current_focus: List[str] = Field(default_factory=list)
    recent_changes: List[str] = Field(default_factory=list)
    open_issues: List[str] = Field(default_factory=list)
    completed_tasks: List[str] = Field(default_factory=list)
    pending_tasks: List[str] = Field(default_factory=list)
    decisions: List[DecisionRecord] = Field(default_factory=list)
    patterns: List[PatternRecord] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not any([
            self.goals, self.key_features, self.architecture, self.current_focus,
            self.recent_changes, self.open_issues, self.completed_tasks,
            self.pending_tasks, self.decisions, self.patterns,
        ])


class MemoryEntry(BaseModel):
    """One recorded interaction (short-term memory)"""
    id: str = Field(default_factory=lambda: f"entry-{uuid.uuid4().hex[:12]}")
    session_id: str = ""
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    user_input: str
    output: str = ""
    actions: List[ActionRecord] = Field(default_factory=list)
    outcome: Outcome = Outcome.UNKNOWN
    context: Dict[str, Any] = Field(default_factory=dict)


class CodingStyle(BaseModel):
    languages: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)
    architecture_patterns: List[str] = Field(default_factory=list)
    testing_approach: str = "standard"
    documentation_level: Literal["minimal", "standard", "comprehensive"] = "standard"
    code_verbosity: Literal["concise", "standard", "verbose"] = "standard"


class WorkflowPreferences(BaseModel):
    task_breakdown_style: Literal["fine-grained", "high-level"] = "high-level"
    feedback_frequency: Literal["immediate", "milestone", "completion"] = "milestone"
    explanation_level: Literal["minimal", "standard", "detailed"] = "standard"
    review_process: Literal["automatic", "manual", "hybrid"] = "hybrid"


class TechnicalPreferences(BaseModel):
    primary_languages: List[str] = Field(default_factory=list)
    frameworks: List[str] = Field(default_factory=list)
    tools: List[str] = Field(default_factory=list)
    deployment_targets: List[str] = Field(default_factory=list)
    database_types: List[str] = Field(default_factory=list)
    testing_frameworks: List[str] = Field(default_factory=list)
    technology_mentions: Dict[str, int] = Field(default_factory=dict)


class CommunicationStyle(BaseModel):
    response_length: Literal["brief", "standard", "detailed"] = "standard"
    technical_detail: Literal["high", "medium", "low"] = "medium"
    example_preference: Literal["code-heavy", "balanced", "explanation-heavy"] = "balanced"
    question_handling: Literal["direct", "guided", "exploratory"] = "guided"


class LearningMetrics(BaseModel):
    success_patterns: List[str] = Field(default_factory=list)
    common_mistakes: List[str] = Field(default_factory=list)
    improvement_areas: List[str] = Field(default_factory=list)
    mastered_concepts: List[str] = Field(default_factory=list)
    current_learning_goals: List[str] = Field(default_factory=list)


class UserProfile(BaseModel):
    """Accumulated user preference state (long-term memory)"""
    user_id: str = "default"
    coding_style: CodingStyle = Field(default_factory=CodingStyle)
    preferred_patterns: List[str] = Field(default_factory=list)
    workflow_preferences: WorkflowPreferences = Field(default_factory=WorkflowPreferences)
    technical_preferences: TechnicalPreferences = Field(default_factory=TechnicalPreferences)
    communication_style: CommunicationStyle = Field(default_factory=CommunicationStyle)
    learning_progress: LearningMetrics = Field(default_factory=LearningMetrics)
    updated_at: UtcDatetime = Field(default_factory=utcnow)


class KnowledgeItem(BaseModel):
    """A normalized unit of retrieved information"""
    id: str
    provenance: Provenance
    kind: KnowledgeKind
    source: str = Field(description="Source that produced the item, e.g. web_search")
    title: str
    description: str = ""
    content: str = ""
    tags: List[str] = Field(default_factory=list)
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    last_used: UtcDatetime = Field(default_factory=utcnow)
    use_count: int = 0

    def dedup_key(self) -> str:
        return normalize_key(self.title, self.description)


class CodePattern(BaseModel):
    """A repeated code shape promoted from code-search hits"""
    id: str
    name: str
    description: str = ""
    category: Literal["architectural", "design", "coding", "testing"] = "coding"
    language: str = "unknown"
    code_example: str = ""
    use_case: str = ""
    benefits: List[str] = Field(default_factory=list)
    tradeoffs: List[str] = Field(default_factory=list)
    related_patterns: List[str] = Field(default_factory=list)
    application_count: int = 0
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)

    def dedup_key(self) -> str:
        return normalize_key(self.name, self.description)


class ToolDescriptor(BaseModel):
    """A tool available to the downstream model"""
    name: str
    description: str
    input_schema: Dict[str, str] = Field(default_factory=dict)
    output_format: str = "markdown"
    capabilities: List[str] = Field(default_factory=list)
    limitations: List[str] = Field(default_factory=list)
    recommended_use: List[str] = Field(default_factory=list)


class QualityAssessment(BaseModel):
    """Result of one scoring pass. Immutable; overall is always the weighted formula."""
    model_config = ConfigDict(frozen=True)

    completeness: int = Field(ge=0, le=100)
    feasibility: int = Field(ge=0, le=100)
    clarity: int = Field(ge=0, le=100)
    overall: int = Field(ge=0, le=100)
    confidence: ConfidenceLevel = ConfidenceLevel.LOW
    missing_information: List[str] = Field(default_factory=list)
    potential_issues: List[str] = Field(default_factory=list)
    optimization_suggestions: List[str] = Field(default_factory=list)
    can_proceed: bool = False
    rationale: str = ""

    @model_validator(mode="after")
    def _check_overall(self) -> "QualityAssessment":
        expected = weighted_overall(self.completeness, self.feasibility, self.clarity)
        if self.overall != expected:
            raise ValueError(f"overall must be {expected}, got {self.overall}")
        return self

    @classmethod
    def from_scores(cls, completeness: int, feasibility: int, clarity: int, **kwargs: Any) -> "QualityAssessment":
        return cls(
            completeness=completeness,
            feasibility=feasibility,
            clarity=clarity,
            overall=weighted_overall(completeness, feasibility, clarity),
            **kwargs
        )


class TaskRequest(BaseModel):
    """A request to assemble context for one task"""
    task_type: TaskType
    user_input: str
    priority: Priority = Priority.MEDIUM
    session_id: str = Field(min_length=1)
    user_id: str = "default"


class SourceCollection(BaseModel):
    """Merged output of the source integrator"""
    knowledge_items: List[KnowledgeItem] = Field(default_factory=list)
    code_patterns: List[CodePattern] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ContextPackage(BaseModel):
    """Bundle of instructions, project data, memory and knowledge for one task"""
    task_type: TaskType
    priority: Priority = Priority.MEDIUM
    session_id: str
    user_id: str = "default"
    user_input: str
    system_instructions: List[str] = Field(default_factory=list)
    project_context: ProjectContext = Field(default_factory=ProjectContext)
    short_term_memory: List[MemoryEntry] = Field(default_factory=list)
    long_term_memory: UserProfile = Field(default_factory=UserProfile)
    relevant_knowledge: List[KnowledgeItem] = Field(default_factory=list)
    related_patterns: List[CodePattern] = Field(default_factory=list)
    available_tools: List[ToolDescriptor] = Field(default_factory=list)
    action_history: List[ActionRecord] = Field(default_factory=list)
    quality_report: Optional[QualityAssessment] = None
    warnings: List[str] = Field(default_factory=list)
    is_fallback: bool = False
    created_at: UtcDatetime = Field(default_factory=utcnow)

    def item_counts(self) -> Dict[str, int]:
        return {
            "knowledge": len(self.relevant_knowledge),
            "patterns": len(self.related_patterns),
            "tools": len(self.available_tools),
            "memory": len(self.short_term_memory),
            "actions": len(self.action_history),
        }


class ContextResult(BaseModel):
    """Best package found by the refinement loop together with its assessment"""
    package: ContextPackage
    assessment: QualityAssessment
    passes: int = Field(ge=1, description="Scoring passes performed")
    trace: List[str] = Field(default_factory=list)
