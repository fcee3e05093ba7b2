from typing import Dict, List, Optional

from context_engine.domain.context.context_ranker import ContextRanker
from context_engine.domain.context.providers import ExternalProviders
from context_engine.domain.models.context_package import ToolDescriptor


BASELINE_TOOLS = [
    ToolDescriptor(
        name="get-context-info",
        description="Read the project context documents and memory for the current task",
        input_schema={"project_root": "string", "task_type": "string", "include_memory": "boolean"},
        capabilities=["file reading", "context aggregation", "memory lookup"],
        limitations=["read-only"],
        recommended_use=["before starting a task", "when project background is unclear"],
    ),
    ToolDescriptor(
        name="update-context-engineering",
        description="Record progress, decisions and changes in the project context documents",
        input_schema={"project_root": "string", "change_type": "string", "description": "string"},
        capabilities=["file writing", "decision logging", "progress tracking"],
        limitations=["writes only to the context-engineering directory"],
        recommended_use=["after completing a task", "after a design decision"],
    ),
    ToolDescriptor(
        name="init-context-engineering",
        description="Create the context-engineering document structure for a project",
        input_schema={"project_root": "string", "force_reinit": "boolean"},
        capabilities=["file creation", "project setup"],
        limitations=["does not overwrite existing documents unless forced"],
        recommended_use=["when the project has no context documents yet"],
    ),
]

PROVIDER_TOOLS = {
    "web_search": ToolDescriptor(
        name="web-search",
        description="Search the web for solutions, articles and error reports",
        input_schema={"query": "string"},
        capabilities=["web search", "external knowledge"],
        limitations=["results are unauthenticated and may be outdated"],
        recommended_use=["unfamiliar errors", "researching approaches"],
    ),
    "code_index_search": ToolDescriptor(
        name="code-search",
        description="Search the indexed codebase for code snippets and usages",
        input_schema={"query": "string", "language": "string"},
        capabilities=["code search", "usage lookup", "bug localization"],
        limitations=["limited to indexed repositories"],
        recommended_use=["locating the code behind a bug", "finding existing patterns"],
    ),
    "file_search": ToolDescriptor(
        name="file-search",
        description="Find project files by glob pattern",
        input_schema={"pattern": "string", "root": "string"},
        capabilities=["file discovery", "file reading"],
        limitations=["matches file names, not contents"],
        recommended_use=["finding tests, configs and entry points"],
    ),
    "library_doc_search": ToolDescriptor(
        name="library-docs",
        description="Look up third-party library documentation and examples",
        input_schema={"library": "string", "topic": "string"},
        capabilities=["library documentation", "api reference", "examples"],
        limitations=["only libraries known to the documentation provider"],
        recommended_use=["using an unfamiliar library api"],
    ),
}


class ToolCatalog:
    """Registry of tools available to the downstream model"""

    def __init__(self, providers: Optional[ExternalProviders] = None, ranker: Optional[ContextRanker] = None):
        self.tools: Dict[str, ToolDescriptor] = {}
        self.ranker = ranker or ContextRanker()

        for tool in BASELINE_TOOLS:
            self.register_tool(tool)

        providers = providers or ExternalProviders()
        for provider in providers.configured():
            self.register_tool(PROVIDER_TOOLS[provider])

    def register_tool(self, tool: ToolDescriptor):
        """Register a tool, replacing any tool with the same name"""

        self.tools[tool.name] = tool.model_copy(deep=True)

    async def get_available_tools(self, query: str = "") -> List[ToolDescriptor]:
        """All tools, most relevant to the query first"""

        tools = list(self.tools.values())
        if not query:
            return [tool.model_copy(deep=True) for tool in tools]

        scores = await self.ranker.rank_tools(query, tools)
        ranked = sorted(tools, key=lambda tool: scores.get(tool.name, 0.0), reverse=True)
        return [tool.model_copy(deep=True) for tool in ranked]

    async def get_tool_info(self, name: str) -> Optional[ToolDescriptor]:
        """Get information about a specific tool"""

        tool = self.tools.get(name)
        return tool.model_copy(deep=True) if tool else None
