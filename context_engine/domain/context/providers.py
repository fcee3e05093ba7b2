"""
Capability interfaces for external knowledge providers.

Each provider is an optional async callable supplied by the host. Raw hits are
validated into the typed shapes below at the boundary where the provider is
invoked, so a provider returning malformed data fails like any other source.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from context_engine.domain.models.context_package import UtcDatetime


class WebSearchHit(BaseModel):
    title: str
    url: str = ""
    snippet: str = ""
    published_at: Optional[UtcDatetime] = None
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)


class CodeSearchHit(BaseModel):
    file_path: str
    line_number: int = 0
    code: str
    context: str = ""
    language: str = "unknown"
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)


class FileSearchHit(BaseModel):
    file_path: str
    file_name: str
    size: int = 0
    last_modified: Optional[UtcDatetime] = None
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)


class LibraryDocHit(BaseModel):
    library: str
    section: str
    content: str = ""
    examples: List[str] = Field(default_factory=list)
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)


WebSearch = Callable[[str], Awaitable[List[Any]]]
CodeIndexSearch = Callable[..., Awaitable[List[Any]]]
FileSearch = Callable[[str, str], Awaitable[List[Any]]]
LibraryDocSearch = Callable[..., Awaitable[List[Any]]]


class ExternalProviders(BaseModel):
    """Optional external capabilities; an absent provider contributes nothing"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    web_search: Optional[WebSearch] = None
    code_index_search: Optional[CodeIndexSearch] = None
    file_search: Optional[FileSearch] = None
    library_doc_search: Optional[LibraryDocSearch] = None

    def configured(self) -> List[str]:
        return [
            name for name in ("web_search", "code_index_search", "file_search", "library_doc_search")
            if getattr(self, name) is not None
        ]


HitT = TypeVar("HitT", bound=BaseModel)

_adapters: Dict[type, TypeAdapter] = {}


def validate_hits(model: Type[HitT], raw: Any) -> List[HitT]:
    """Validate a provider response into a list of typed hits"""

    adapter = _adapters.get(model)
    if adapter is None:
        adapter = TypeAdapter(List[model])
        _adapters[model] = adapter
    return adapter.validate_python(raw or [])
