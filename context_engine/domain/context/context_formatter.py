from typing import List
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from context_engine.domain.models.context_package import ContextPackage


# Packages scoring below this carry a quality warning section
QUALITY_WARNING_THRESHOLD = 80
TOP_KNOWLEDGE = 5


def format_for_llm(package: ContextPackage) -> str:
    """Render a context package as markdown for model consumption"""

    report = package.quality_report
    project = package.project_context

    sections = [
        "# Context package",
        "",
        f"**Task type**: {package.task_type.value}",
        f"**Priority**: {package.priority.value}",
        f"**Quality score**: {report.overall}/100" if report else "**Quality score**: not assessed",
        "",
        "## System instructions",
        *(f"- {instruction}" for instruction in package.system_instructions),
        "",
        "## User input",
        package.user_input,
        "",
        "## Project context",
        f"**Goals**: {', '.join(project.goals)}",
        f"**Key features**: {', '.join(project.key_features)}",
        f"**Current focus**: {', '.join(project.current_focus)}",
    ]
    if project.architecture:
        sections.append(f"**Architecture**: {project.architecture}")

    sections.extend(["", "## Relevant knowledge"])
    sections.extend(
        f"**{item.title}**: {item.description}" for item in package.relevant_knowledge[:TOP_KNOWLEDGE]
    )

    if package.related_patterns:
        sections.extend(["", "## Related patterns"])
        sections.extend(f"**{pattern.name}**: {pattern.description}" for pattern in package.related_patterns)

    sections.extend(["", "## Available tools"])
    sections.extend(f"**{tool.name}**: {tool.description}" for tool in package.available_tools)
    sections.append("")

    if report and report.overall < QUALITY_WARNING_THRESHOLD:
        sections.extend(["## Context quality warning", report.rationale, ""])
        if report.optimization_suggestions:
            sections.append("**Suggestions**:")
            sections.extend(f"- {suggestion}" for suggestion in report.optimization_suggestions)
            sections.append("")

    return "\n".join(sections)


def to_messages(package: ContextPackage) -> List[BaseMessage]:
    """System message carrying the rendered context followed by the user's request"""

    return [
        SystemMessage(content=format_for_llm(package)),
        HumanMessage(content=package.user_input),
    ]
