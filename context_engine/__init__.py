from context_engine.application.service import ContextEngine, create_engine
from context_engine.domain.context.providers import ExternalProviders
from context_engine.domain.models.context_package import (
    ContextPackage,
    ContextResult,
    Priority,
    QualityAssessment,
    TaskRequest,
    TaskType,
)
from context_engine.infrastructure.config.settings import EngineSettings

__version__ = "0.1.0"

__all__ = [
    "ContextEngine",
    "create_engine",
    "ExternalProviders",
    "ContextPackage",
    "ContextResult",
    "Priority",
    "QualityAssessment",
    "TaskRequest",
    "TaskType",
    "EngineSettings",
]
