"""Configuration schema using Pydantic settings."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MemoryConfig(BaseModel):
    """Short/long-term memory store configuration."""
    storage_dir: Optional[Path] = None  # Defaults to <project_root>/context-engineering/memory
    persist: bool = True
    max_short_term_items: int = Field(default=100, ge=1, description="Entries retained per session")
    max_session_history: int = Field(default=50, ge=1, description="Entries returned per retrieval")
    max_recent_actions: int = Field(default=10, ge=1)
    retention_days: int = Field(default=7, ge=0)
    read_timeout: float = Field(default=2.0, gt=0, description="Seconds per memory read branch")


class RankingWeights(BaseModel):
    """Weights of the default relevance strategy."""
    relevance: float = Field(default=0.6, ge=0.0)
    source_priority: float = Field(default=0.25, ge=0.0)
    recency: float = Field(default=0.15, ge=0.0)


class SourceConfig(BaseModel):
    """Multi-source integration configuration."""
    enable_external: bool = True
    per_source_timeout: float = Field(default=5.0, gt=0)
    max_knowledge_items: int = Field(default=10, ge=1)
    weights: RankingWeights = Field(default_factory=RankingWeights)
    recency_half_life_days: float = Field(default=7.0, gt=0)
    web_min_score: float = 0.7
    web_limit: int = 5
    code_min_score: float = 0.6
    code_limit: int = 10
    file_min_score: float = 0.6
    file_limit: int = 5
    library_min_score: float = 0.7
    library_limit: int = 3


class OptimizationConfig(BaseModel):
    """Bounds of the refinement loop."""
    max_refinements: int = Field(default=2, ge=0, le=10)
    prune_threshold: float = Field(default=0.3, ge=0.0, le=1.0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "json"  # json | console
    service_name: str = "context-engine"


class EngineSettings(BaseSettings):
    """Root configuration for the context engine."""
    model_config = SettingsConfigDict(env_prefix="CONTEXT_ENGINE_", env_nested_delimiter="__")

    project_root: Path = Path(".")
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    sources: SourceConfig = Field(default_factory=SourceConfig)
    optimization: OptimizationConfig = Field(default_factory=OptimizationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def context_dir(self) -> Path:
        """Directory holding the collaborator-owned context documents."""
        return self.project_root.expanduser() / "context-engineering"

    @property
    def memory_dir(self) -> Path:
        if self.memory.storage_dir is not None:
            return self.memory.storage_dir.expanduser()
        return self.context_dir / "memory"
