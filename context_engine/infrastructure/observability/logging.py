import structlog
import logging
import sys
from collections import Counter, defaultdict
from typing import Dict, Any, List
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "context-engine"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add session and request context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    bound = structlog.contextvars.get_contextvars()

    session_id = bound.get("session_id")
    if session_id and "session_id" not in event_dict:
        event_dict["session_id"] = session_id

    task_type = bound.get("task_type")
    if task_type and "task_type" not in event_dict:
        event_dict["task_type"] = task_type

    return event_dict


class MetricsCollector:
    """Aggregates pipeline events into latency, quality and source-health figures"""

    def __init__(self):
        self.event_counts: Counter = Counter()
        self.latencies: Dict[str, List[float]] = defaultdict(list)
        self.pass_scores: List[int] = []
        self.builds = 0
        self.proceeded = 0
        self.assemblies = 0
        self.fallbacks = 0
        self.knowledge_counts: List[int] = []
        self.source_failures: Counter = Counter()
        self.logger = structlog.get_logger("context_engine.metrics")

    def record(self, name: str, data: Dict[str, Any]) -> None:
        """Fold one pipeline event into the aggregates"""

        self.event_counts[name] += 1

        duration_ms = data.get("duration_ms")
        if isinstance(duration_ms, (int, float)):
            self.latencies[name].append(float(duration_ms))

        if name == "optimization.pass":
            self.pass_scores.append(int(data.get("overall", 0)))
        elif name == "optimization.done":
            self.builds += 1
            if data.get("can_proceed"):
                self.proceeded += 1
        elif name == "context.assembled":
            self.assemblies += 1
            if data.get("fallback"):
                self.fallbacks += 1
            self.knowledge_counts.append(int(data.get("knowledge", 0)))
        elif name == "sources.source_failed":
            self.source_failures[data.get("source", "unknown")] += 1

        self.logger.debug("metric", event=name, count=self.event_counts[name])

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Current aggregates grouped by pipeline concern"""

        return {
            "events": dict(self.event_counts),
            "latency_ms": {
                name: {
                    "count": len(samples),
                    "avg": sum(samples) / len(samples),
                    "min": min(samples),
                    "max": max(samples),
                }
                for name, samples in self.latencies.items()
                if samples
            },
            "quality": {
                "passes": len(self.pass_scores),
                "avg_overall": _mean(self.pass_scores),
                "best_overall": max(self.pass_scores, default=0),
                "builds": self.builds,
                "proceed_rate": self.proceeded / self.builds if self.builds else 0.0,
            },
            "assembly": {
                "count": self.assemblies,
                "fallbacks": self.fallbacks,
                "avg_knowledge_items": _mean(self.knowledge_counts),
            },
            "sources": {
                "failures": dict(self.source_failures),
            },
        }


def _mean(values: List[int]) -> float:
    return sum(values) / len(values) if values else 0.0
