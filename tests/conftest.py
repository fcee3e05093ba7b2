"""Shared fixtures for context engine tests."""

import pytest
from pathlib import Path

from context_engine.domain.context.memory.memory_store import MemoryStore
from context_engine.infrastructure.config.settings import EngineSettings, MemoryConfig
from context_engine.infrastructure.observability.events import InMemoryEventRecorder


PRODUCT_CONTEXT = """# Product Context

## Project Goals
- Ship a reliable checkout service
- Keep p95 latency under 200ms

## Key Features
- Cart management
- Payment processing

## Architecture
FastAPI service with a PostgreSQL database and a Redis cache.
"""

ACTIVE_CONTEXT = """# Active Context

## Current Focus
- Login flow hardening

## Recent Changes
- [x] Moved sessions to Redis

## Open Issues
- Intermittent null pointer in login handler
"""

PROGRESS = """# Progress

## Completed Tasks
- [x] Session storage migration

## Current Tasks
- [ ] Login error handling
"""

DECISION_LOG = """# Decision Log

## Use Redis for sessions
**Background**: Sticky sessions broke horizontal scaling.

**Decision**: Store sessions in Redis.

**Rationale**: Shared state across instances.
"""

SYSTEM_PATTERNS = """# System Patterns

## Coding Patterns
- Repository: data access goes through repository classes

## Testing Patterns
- Fixtures: shared fixtures live in conftest
"""


@pytest.fixture
def events():
    return InMemoryEventRecorder()


@pytest.fixture
def workspace(tmp_path):
    """Project root with a populated context-engineering directory."""
    core = tmp_path / "context-engineering" / "core-context"
    core.mkdir(parents=True)
    (core / "productContext.md").write_text(PRODUCT_CONTEXT)
    (core / "activeContext.md").write_text(ACTIVE_CONTEXT)
    (core / "progress.md").write_text(PROGRESS)
    (core / "decisionLog.md").write_text(DECISION_LOG)
    (core / "systemPatterns.md").write_text(SYSTEM_PATTERNS)
    return tmp_path


@pytest.fixture
def empty_workspace(tmp_path):
    return tmp_path


@pytest.fixture
def memory_dir(tmp_path) -> Path:
    return tmp_path / "memory"


@pytest.fixture
def memory_store(memory_dir, events):
    return MemoryStore(MemoryConfig(max_short_term_items=5), storage_dir=memory_dir, events=events)


@pytest.fixture
def settings(empty_workspace):
    return EngineSettings(project_root=empty_workspace)
