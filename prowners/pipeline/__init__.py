"""Analysis pipeline: settings, orchestration, filters and exporters."""

from .config import AnalysisSettings, ConfigError, resolve_settings
from .orchestrator import AnalysisError, AnalysisResult, CacheOnlyMiss, Orchestrator, RepoResult, analyze

__all__ = [
    "AnalysisError",
    "AnalysisResult",
    "AnalysisSettings",
    "CacheOnlyMiss",
    "ConfigError",
    "Orchestrator",
    "RepoResult",
    "analyze",
    "resolve_settings",
]
