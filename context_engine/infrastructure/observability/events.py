from typing import Dict, Any, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field
import structlog

from context_engine.domain.models.context_package import utcnow
from .logging import MetricsCollector


class ContextEvent(BaseModel):
    """Structured event emitted by the pipeline components"""
    name: str
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class EventRecorder:
    """Sink for pipeline events. Subclasses decide where events go."""

    def emit(self, name: str, **data: Any) -> ContextEvent:
        event = ContextEvent(name=name, data=data)
        self.handle(event)
        return event

    def handle(self, event: ContextEvent) -> None:
        pass


class StructlogEventRecorder(EventRecorder):
    """Logs every event and folds it into the pipeline metrics"""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics or MetricsCollector()
        self.logger = structlog.get_logger("context_engine.events")

    def handle(self, event: ContextEvent) -> None:
        self.logger.info(event.name, **event.data)
        self.metrics.record(event.name, event.data)


class InMemoryEventRecorder(EventRecorder):
    """Keeps events in memory so callers and tests can inspect them"""

    def __init__(self):
        self.events: List[ContextEvent] = []

    def handle(self, event: ContextEvent) -> None:
        self.events.append(event)

    def named(self, name: str) -> List[ContextEvent]:
        return [event for event in self.events if event.name == name]

    def clear(self) -> None:
        self.events.clear()
