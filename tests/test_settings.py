from pathlib import Path

import pytest
from pydantic import ValidationError

from context_engine.infrastructure.config.settings import EngineSettings, MemoryConfig, OptimizationConfig


def test_defaults():
    settings = EngineSettings()

    assert settings.memory.max_short_term_items == 100
    assert settings.memory.retention_days == 7
    assert settings.sources.per_source_timeout == 5.0
    assert settings.optimization.max_refinements == 2
    assert settings.context_dir == Path("context-engineering")
    assert settings.memory_dir == Path("context-engineering") / "memory"


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("CONTEXT_ENGINE_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("CONTEXT_ENGINE_SOURCES__PER_SOURCE_TIMEOUT", "1.5")
    monkeypatch.setenv("CONTEXT_ENGINE_OPTIMIZATION__MAX_REFINEMENTS", "4")

    settings = EngineSettings()

    assert settings.project_root == tmp_path
    assert settings.sources.per_source_timeout == 1.5
    assert settings.optimization.max_refinements == 4
    assert settings.memory_dir == tmp_path / "context-engineering" / "memory"


def test_explicit_storage_dir_wins(tmp_path):
    settings = EngineSettings(memory=MemoryConfig(storage_dir=tmp_path / "store"))

    assert settings.memory_dir == tmp_path / "store"


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        MemoryConfig(max_short_term_items=0)
    with pytest.raises(ValidationError):
        OptimizationConfig(max_refinements=-1)
