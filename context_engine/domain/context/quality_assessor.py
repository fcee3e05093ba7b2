"""
Multi-dimensional quality scoring of context packages.

The assessor is a pure function of the package: the same package always yields
the same assessment. Missing-information labels and optimization suggestions are
drawn from the fixed vocabularies below so the refinement loop can map them to
remediations.
"""

from typing import Dict, List, Tuple
from datetime import timedelta
import re

from context_engine.domain.models.context_package import (
    ConfidenceLevel,
    ContextPackage,
    QualityAssessment,
    TaskType,
    utcnow,
)


PROCEED_THRESHOLD = 60
FALLBACK_COMPLETENESS_CAP = 30
SUPPORT_RATIO = 0.7
OVERLOAD_ITEMS = 50
STALE_AFTER_DAYS = 7
LOW_RELEVANCE = 0.3

# Missing-information labels
MISSING_GOALS = "project goals"
MISSING_ARCHITECTURE = "technical architecture"
MISSING_KNOWLEDGE = "relevant reference knowledge"
MISSING_HISTORY = "conversation history"
MISSING_REQUEST = "explicit user request"
MISSING_TOOLS = "tool support"

CRITICAL_LABELS = (MISSING_REQUEST, MISSING_TOOLS)

# Potential issues
ISSUE_OVERLOAD = "Information overload: the package holds more items than the model can use well"
ISSUE_STALE = "Stale information: some memory entries are more than a week old"
ISSUE_UNDERSUPPORTED = "Complex task with little reference knowledge"

# Optimization suggestions
SUGGEST_PRUNE = "Prune low-relevance items to reduce information overload"
SUGGEST_REFRESH_MEMORY = "Refresh stale memory entries"
SUGGEST_EXTERNAL_SEARCH = "Search documentation or the web for relevant knowledge"
SUGGEST_RECORD_HISTORY = "Record conversation history to keep context continuity"
SUGGEST_ARCHITECTURE_HISTORY = "Collect architecture decision history and technology choices"
SUGGEST_FEATURE_CRITERIA = "Clarify functional requirements and acceptance criteria"
SUGGEST_BUGFIX_DETAILS = "Collect error logs and reproduction steps"

SUPPLEMENT_PREFIX = "Supplement "

TASK_SUGGESTIONS = {
    TaskType.ARCHITECTURE: SUGGEST_ARCHITECTURE_HISTORY,
    TaskType.FEATURE: SUGGEST_FEATURE_CRITERIA,
    TaskType.BUGFIX: SUGGEST_BUGFIX_DETAILS,
}


def supplement(label: str) -> str:
    return f"{SUPPLEMENT_PREFIX}{label} to improve completeness"


# Task-specific information, each label detected by any of its phrases
REQUIRED_INFORMATION: Dict[TaskType, Dict[str, Tuple[str, ...]]] = {
    TaskType.ARCHITECTURE: {
        "technology stack": ("stack", "framework", "language", "database", "technology"),
        "architecture pattern": ("pattern", "layer", "layered", "microservice", "microservices", "monolith", "architecture"),
        "performance requirements": ("performance", "latency", "throughput"),
        "scalability considerations": ("scale", "scalability", "scaling", "scalable"),
    },
    TaskType.FEATURE: {
        "functional requirements": ("requirement", "requirements", "should", "must"),
        "user story": ("user", "users", "story", "as a"),
        "acceptance criteria": ("acceptance", "criteria", "done when"),
        "technical approach": ("implement", "api", "component", "service", "endpoint"),
    },
    TaskType.BUGFIX: {
        "error symptoms": ("error", "exception", "crash", "null pointer", "traceback", "fail", "fails", "failing", "bug"),
        "expected behavior": ("expected", "should"),
        "environment details": ("environment", "version", "os", "browser", "python", "node"),
        "reproduction steps": ("reproduce", "repro", "steps", "step"),
    },
    TaskType.REFACTOR: {
        "refactoring goal": ("goal", "improve", "simplify", "clean", "cleanup"),
        "current problems": ("problem", "problems", "issue", "smell", "duplicate", "duplicated"),
        "constraints": ("constraint", "constraints", "must not", "keep", "without"),
        "success criteria": ("success", "criteria", "measure", "tests"),
    },
    TaskType.DECISION: {
        "decision background": ("background", "context", "because"),
        "available options": ("option", "options", "alternative", "alternatives", "versus", "vs"),
        "evaluation criteria": ("criteria", "tradeoff", "tradeoffs", "cost", "compare"),
        "impact analysis": ("impact", "risk", "risks", "consequence"),
    },
    TaskType.PROGRESS: {
        "current status": ("status", "done", "complete", "completed", "progress"),
        "target milestones": ("goal", "milestone", "milestones", "target"),
        "timeline": ("deadline", "timeline", "schedule", "week", "sprint"),
        "resource allocation": ("resource", "resources", "team", "owner", "budget"),
    },
    TaskType.GENERAL: {
        "basic requirements": ("need", "want", "require", "how", "what"),
        "context information": ("context", "project", "about"),
    },
}

REQUIRED_TOOLS: Dict[TaskType, List[str]] = {
    TaskType.ARCHITECTURE: ["get-context-info", "update-context-engineering"],
    TaskType.FEATURE: ["get-context-info", "update-context-engineering"],
    TaskType.BUGFIX: ["get-context-info", "code-search"],
    TaskType.REFACTOR: ["get-context-info", "update-context-engineering", "code-search"],
    TaskType.DECISION: ["update-context-engineering"],
    TaskType.PROGRESS: ["get-context-info", "update-context-engineering"],
    TaskType.GENERAL: ["get-context-info"],
}

BASE_COMPLEXITY = {
    TaskType.ARCHITECTURE: 9,
    TaskType.FEATURE: 7,
    TaskType.DECISION: 6,
    TaskType.REFACTOR: 5,
    TaskType.GENERAL: 5,
    TaskType.BUGFIX: 4,
    TaskType.PROGRESS: 3,
}

COMPLEXITY_WORDS = ("complex", "complicated", "difficult", "distributed", "migration", "concurrent")
SIMPLICITY_WORDS = ("simple", "basic", "trivial", "quick", "small")
ACTION_VERBS = (
    "create", "fix", "optimize", "implement", "design", "analyze", "add", "refactor",
    "update", "remove", "build", "migrate", "debug", "review", "write",
)
DETAIL_WORDS = ("specifically", "detailed", "exactly", "because", "when", "expected")
SPECIFICITY_WORDS = ("explicit", "explicitly", "specific", "clearly", "concrete")


def contains_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text, re.IGNORECASE) is not None


def contains_any(text: str, phrases) -> bool:
    return any(contains_phrase(text, phrase) for phrase in phrases)


class QualityAssessor:
    """Scores a context package on completeness, feasibility and clarity"""

    def assess(self, package: ContextPackage) -> QualityAssessment:
        """Produce a fresh assessment of the package"""

        completeness, completeness_notes = self.completeness(package)
        feasibility, feasibility_notes = self.feasibility(package)
        clarity, clarity_notes = self.clarity(package)

        missing = self.missing_information(package)
        issues = self.potential_issues(package)
        suggestions = self.optimization_suggestions(package, missing, issues)

        assessment = QualityAssessment.from_scores(completeness, feasibility, clarity)
        can_proceed = (
            assessment.overall >= PROCEED_THRESHOLD
            and not any(label in missing for label in CRITICAL_LABELS)
            and self.context_support(package) >= SUPPORT_RATIO * self.task_complexity(package)
        )

        return QualityAssessment.from_scores(
            completeness,
            feasibility,
            clarity,
            confidence=self.confidence(assessment.overall, len(missing)),
            missing_information=missing,
            potential_issues=issues,
            optimization_suggestions=suggestions,
            can_proceed=can_proceed,
            rationale=self.rationale(
                assessment, can_proceed, completeness_notes + feasibility_notes + clarity_notes
            ),
        )

    # ------------------------------------------------------------------
    # Dimensions
    # ------------------------------------------------------------------

    def completeness(self, package: ContextPackage) -> Tuple[int, List[Tuple[bool, str]]]:
        score = 0
        notes = []

        has_instructions = bool(package.system_instructions)
        score += 15 if has_instructions else 0
        notes.append((has_instructions, "system instructions provided"))

        clear_input = len(package.user_input.strip()) > 10
        score += 20 if clear_input else 0
        notes.append((clear_input, "user input is specific"))

        project_score = min(self.project_context_score(package), 25)
        score += project_score
        notes.append((project_score > 15, "project context populated"))

        has_knowledge = bool(package.relevant_knowledge)
        score += 15 if has_knowledge else 0
        notes.append((has_knowledge, f"{len(package.relevant_knowledge)} relevant knowledge items"))

        has_tools = bool(package.available_tools)
        score += 15 if has_tools else 0
        notes.append((has_tools, f"{len(package.available_tools)} tools available"))

        required = REQUIRED_INFORMATION[package.task_type]
        found = len(required) - len(self.missing_task_information(package))
        score += int(10 * found / len(required))

        score = min(score, 100)
        if package.is_fallback:
            score = min(score, FALLBACK_COMPLETENESS_CAP)
        return score, notes

    def feasibility(self, package: ContextPackage) -> Tuple[int, List[Tuple[bool, str]]]:
        notes = []
        complexity = self.task_complexity(package)
        support = self.context_support(package)

        if support >= complexity:
            score = 40.0
            notes.append((True, "context support matches task complexity"))
        else:
            score = max(0.0, 40 - (complexity - support) * 10)
            notes.append((False, "task complexity exceeds context support"))

        required_tools = REQUIRED_TOOLS[package.task_type]
        available = {tool.name for tool in package.available_tools}
        coverage = sum(1 for name in required_tools if name in available) / len(required_tools)
        score += coverage * 30
        notes.append((coverage > 0.8, f"tool coverage {round(coverage * 100)}%"))

        project = package.project_context
        dependencies = [bool(project.architecture), bool(project.decisions), bool(project.recent_changes)]
        dependency_ratio = sum(dependencies) / len(dependencies)
        score += dependency_ratio * 30
        notes.append((dependency_ratio > 0.5, "dependency information available"))

        return min(round(score), 100), notes

    def clarity(self, package: ContextPackage) -> Tuple[int, List[Tuple[bool, str]]]:
        instruction = self.instruction_clarity(package.system_instructions)
        intent = self.intent_clarity(package.user_input)
        consistency = self.consistency(package)

        notes = [
            (instruction > 70, "system instructions are unambiguous"),
            (intent > 70, "user intent is clear"),
            (consistency > 70, "gathered information is consistent"),
        ]
        score = 0.3 * instruction + 0.4 * intent + 0.3 * consistency
        return min(round(score), 100), notes

    # ------------------------------------------------------------------
    # Heuristics
    # ------------------------------------------------------------------

    def project_context_score(self, package: ContextPackage) -> int:
        project = package.project_context
        score = 0
        if project.goals:
            score += 5
        if project.key_features:
            score += 5
        if project.architecture:
            score += 5
        if project.current_focus:
            score += 3
        if project.recent_changes:
            score += 3
        if project.decisions:
            score += 2
        if project.patterns:
            score += 2
        return score

    def task_complexity(self, package: ContextPackage) -> int:
        complexity = BASE_COMPLEXITY[package.task_type]
        text = package.user_input

        if len(text) > 200:
            complexity += 1
        if contains_any(text, COMPLEXITY_WORDS):
            complexity += 1
        if contains_any(text, SIMPLICITY_WORDS):
            complexity -= 1

        return max(1, min(10, complexity))

    def context_support(self, package: ContextPackage) -> float:
        support = (
            min(len(package.relevant_knowledge), 5)
            + min(len(package.available_tools), 3)
            + min(len(package.short_term_memory) / 2, 2)
        )
        return min(10.0, support)

    def instruction_clarity(self, instructions: List[str]) -> int:
        clarity = 0
        for instruction in instructions:
            if 20 < len(instruction) < 200:
                clarity += 20
            if contains_any(instruction, SPECIFICITY_WORDS):
                clarity += 10
        return min(100, clarity)

    def intent_clarity(self, user_input: str) -> int:
        clarity = 50
        if 20 < len(user_input) < 500:
            clarity += 20
        if contains_any(user_input, ACTION_VERBS):
            clarity += 15
        if contains_any(user_input, DETAIL_WORDS):
            clarity += 15
        return min(100, clarity)

    def consistency(self, package: ContextPackage) -> int:
        project = package.project_context
        score = 100

        completed = {task.lower() for task in project.completed_tasks}
        if any(task.lower() in completed for task in project.pending_tasks):
            score -= 30

        knowledge = package.relevant_knowledge
        if knowledge and sum(1 for item in knowledge if item.relevance_score < LOW_RELEVANCE) > len(knowledge) / 2:
            score -= 20

        if project.is_empty():
            score -= 20

        return max(0, score)

    def missing_task_information(self, package: ContextPackage) -> List[str]:
        text = " ".join([
            package.user_input,
            package.project_context.architecture,
            *package.project_context.goals,
            *(f"{item.description} {item.content}" for item in package.relevant_knowledge),
        ])
        return [
            label for label, phrases in REQUIRED_INFORMATION[package.task_type].items()
            if not contains_any(text, phrases)
        ]

    def missing_information(self, package: ContextPackage) -> List[str]:
        missing = self.missing_task_information(package)

        if not package.project_context.goals:
            missing.append(MISSING_GOALS)
        if not package.project_context.architecture:
            missing.append(MISSING_ARCHITECTURE)
        if not package.relevant_knowledge:
            missing.append(MISSING_KNOWLEDGE)
        if not package.short_term_memory:
            missing.append(MISSING_HISTORY)
        if len(package.user_input.strip()) <= 10:
            missing.append(MISSING_REQUEST)
        if not package.available_tools:
            missing.append(MISSING_TOOLS)

        return missing

    def potential_issues(self, package: ContextPackage) -> List[str]:
        issues = []

        total_items = len(package.relevant_knowledge) + len(package.related_patterns) + len(package.short_term_memory)
        if total_items > OVERLOAD_ITEMS:
            issues.append(ISSUE_OVERLOAD)

        if self.has_stale_memory(package):
            issues.append(ISSUE_STALE)

        if self.task_complexity(package) > 8 and len(package.relevant_knowledge) < 3:
            issues.append(ISSUE_UNDERSUPPORTED)

        available = {capability for tool in package.available_tools for capability in tool.capabilities}
        missing_capabilities = [cap for cap in self.required_capabilities(package) if cap not in available]
        if missing_capabilities:
            issues.append(f"Missing capabilities: {', '.join(missing_capabilities)}")

        return issues

    def required_capabilities(self, package: ContextPackage) -> List[str]:
        capabilities = ["file reading"]
        if package.task_type in (TaskType.BUGFIX, TaskType.REFACTOR):
            capabilities.append("code search")
        if contains_any(package.user_input, ("api", "http", "web", "network")):
            capabilities.append("web search")
        return capabilities

    def has_stale_memory(self, package: ContextPackage) -> bool:
        cutoff = utcnow() - timedelta(days=STALE_AFTER_DAYS)
        return any(entry.timestamp < cutoff for entry in package.short_term_memory)

    def optimization_suggestions(self, package: ContextPackage, missing: List[str], issues: List[str]) -> List[str]:
        suggestions = [supplement(label) for label in missing]

        if ISSUE_OVERLOAD in issues:
            suggestions.append(SUGGEST_PRUNE)
        if ISSUE_STALE in issues:
            suggestions.append(SUGGEST_REFRESH_MEMORY)

        task_suggestion = TASK_SUGGESTIONS.get(package.task_type)
        if task_suggestion:
            suggestions.append(task_suggestion)

        if not package.relevant_knowledge:
            suggestions.append(SUGGEST_EXTERNAL_SEARCH)
        if not package.short_term_memory:
            suggestions.append(SUGGEST_RECORD_HISTORY)

        return list(dict.fromkeys(suggestions))

    def confidence(self, overall: int, missing_count: int) -> ConfidenceLevel:
        if overall >= 85 and missing_count <= 1:
            return ConfidenceLevel.HIGH
        if overall >= 70 and missing_count <= 3:
            return ConfidenceLevel.MEDIUM
        return ConfidenceLevel.LOW

    def rationale(self, assessment: QualityAssessment, can_proceed: bool, notes: List[Tuple[bool, str]]) -> str:
        lines = [
            f"completeness {assessment.completeness}/100, "
            f"feasibility {assessment.feasibility}/100, "
            f"clarity {assessment.clarity}/100, overall {assessment.overall}/100",
        ]
        if can_proceed:
            lines.append("The context is sufficient for the task. Strengths:")
            lines.extend(f"- {text}" for passed, text in notes if passed)
        else:
            lines.append("The context is not sufficient for the task. Problems:")
            lines.extend(f"- {text}" for passed, text in notes if not passed)
        return "\n".join(lines)
