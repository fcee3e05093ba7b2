from typing import Dict, List, Optional, Tuple
from datetime import datetime, timezone
from pathlib import Path
import asyncio
import re

import structlog

from context_engine.domain.models.context_package import (
    DecisionRecord,
    KnowledgeItem,
    KnowledgeKind,
    PatternRecord,
    ProjectContext,
    Provenance,
    TaskType,
)
from .context_ranker import RelevanceStrategy, lexical_overlap

logger = structlog.get_logger(__name__)

CORE_CONTEXT_FILES = {
    "product": "productContext.md",
    "active": "activeContext.md",
    "progress": "progress.md",
    "decisions": "decisionLog.md",
    "patterns": "systemPatterns.md",
}

SECTION_HEADING = re.compile(r"^##\s+(.+?)\s*$")


def split_sections(content: str) -> List[Tuple[str, str]]:
    """Split markdown into (heading, body) pairs on level-2 headings"""

    sections: List[Tuple[str, str]] = []
    heading: Optional[str] = None
    body: List[str] = []

    for line in content.splitlines():
        match = SECTION_HEADING.match(line)
        if match:
            if heading is not None:
                sections.append((heading, "\n".join(body).strip()))
            heading = match.group(1)
            body = []
        elif heading is not None:
            body.append(line)

    if heading is not None:
        sections.append((heading, "\n".join(body).strip()))
    return sections


def extract_section(content: str, title: str) -> str:
    for heading, body in split_sections(content):
        if heading.lower() == title.lower():
            return body
    return ""


def extract_list_items(section: str) -> List[str]:
    items = []
    for line in section.splitlines():
        stripped = line.strip()
        if stripped.startswith(("-", "*")):
            item = re.sub(r"^[\s*\-]+", "", stripped).strip()
            # Drop markdown checkboxes
            item = re.sub(r"^\[[ xX]\]\s*", "", item)
            if item:
                items.append(item)
    return items


def extract_labeled(body: str, label: str) -> str:
    """Value following a `**Label**:` marker, up to the next blank line"""

    match = re.search(rf"\*\*{re.escape(label)}\*\*:\s*(.+?)(?:\n\s*\n|\Z)", body, re.S)
    return match.group(1).strip() if match else ""


class ProjectContextReader:
    """Reads the project snapshot from the core-context markdown documents"""

    def __init__(self, context_dir: Path):
        self.core_dir = context_dir / "core-context"

    async def read(self) -> ProjectContext:
        """Read all core documents concurrently; missing files yield empty fields"""

        names = list(CORE_CONTEXT_FILES)
        contents = await asyncio.gather(
            *(asyncio.to_thread(self._read_file, self.core_dir / CORE_CONTEXT_FILES[name]) for name in names)
        )
        docs: Dict[str, str] = dict(zip(names, contents))

        return ProjectContext(
            goals=extract_list_items(extract_section(docs["product"], "Project Goals")),
            key_features=extract_list_items(extract_section(docs["product"], "Key Features")),
            architecture=extract_section(docs["product"], "Architecture"),
            current_focus=extract_list_items(extract_section(docs["active"], "Current Focus")),
            recent_changes=extract_list_items(extract_section(docs["active"], "Recent Changes")),
            open_issues=extract_list_items(extract_section(docs["active"], "Open Issues")),
            completed_tasks=extract_list_items(extract_section(docs["progress"], "Completed Tasks")),
            pending_tasks=extract_list_items(extract_section(docs["progress"], "Current Tasks")),
            decisions=self._parse_decisions(docs["decisions"]),
            patterns=self._parse_patterns(docs["patterns"]),
        )

    def _read_file(self, path: Path) -> str:
        if not path.is_file():
            return ""
        return path.read_text(encoding="utf-8")

    def _parse_decisions(self, content: str) -> List[DecisionRecord]:
        decisions = []
        for heading, body in split_sections(content):
            decisions.append(DecisionRecord(
                title=heading,
                background=extract_labeled(body, "Background") or body.split("\n\n")[0].strip(),
                selected_option=extract_labeled(body, "Decision"),
                reasoning=extract_labeled(body, "Rationale"),
            ))
        return decisions

    def _parse_patterns(self, content: str) -> List[PatternRecord]:
        categories = {"coding patterns": "coding", "architectural patterns": "architectural", "testing patterns": "testing"}
        patterns = []
        for heading, body in split_sections(content):
            category = categories.get(heading.lower(), "coding")
            for item in extract_list_items(body):
                name, _, description = item.partition(":")
                patterns.append(PatternRecord(name=name.strip(), category=category, description=description.strip()))
        return patterns


class ProjectDocumentSearch:
    """Internal knowledge source over the project's markdown documents"""

    SOURCE = "project_docs"

    def __init__(self, context_dir: Path, project_root: Path, strategy: RelevanceStrategy):
        self.search_dirs = [context_dir / "core-context", project_root / "docs"]
        self.strategy = strategy

    async def search(self, query: str, task_type: TaskType) -> List[KnowledgeItem]:
        return await asyncio.to_thread(self._search, query, task_type)

    def _search(self, query: str, task_type: TaskType) -> List[KnowledgeItem]:
        items: List[KnowledgeItem] = []

        for doc in self._documentation_files():
            try:
                content = doc.read_text(encoding="utf-8")
                modified = datetime.fromtimestamp(doc.stat().st_mtime, timezone.utc)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Skipping unreadable document", path=str(doc), error=str(e))
                continue

            for index, (heading, body) in enumerate(split_sections(content)):
                if not body or lexical_overlap(query, f"{heading}\n{body}") <= 0:
                    continue
                items.append(KnowledgeItem(
                    id=f"internal-{doc.stem}-{index}",
                    provenance=Provenance.INTERNAL,
                    kind=KnowledgeKind.BEST_PRACTICE,
                    source=self.SOURCE,
                    title=f"Project document: {doc.name}",
                    description=heading,
                    content=body,
                    tags=[task_type.value, "internal", "documentation"],
                    relevance_score=self.strategy.score(query, f"{heading}\n{body}", self.SOURCE, produced_at=modified),
                ))

        return items

    def _documentation_files(self) -> List[Path]:
        files: List[Path] = []
        for directory in self.search_dirs:
            if directory.is_dir():
                files.extend(sorted(directory.glob("*.md")))
        return files
