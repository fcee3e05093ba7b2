from .events import ContextEvent, EventRecorder, InMemoryEventRecorder, StructlogEventRecorder
from .logging import MetricsCollector, setup_logging

__all__ = [
    "ContextEvent",
    "EventRecorder",
    "InMemoryEventRecorder",
    "StructlogEventRecorder",
    "MetricsCollector",
    "setup_logging",
]
