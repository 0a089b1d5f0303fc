"""Bulletin radar package namespace."""

from importlib import import_module
from typing import Any

__all__ = [
    "FindingStore",
    "FindingClassifier",
    "PipelineConfig",
    "PipelineRunner",
    "SourceRegistry",
    "is_relevant",
    "run",
    "to_legacy_filings",
]


def __getattr__(name: str) -> Any:
    if name == "FindingStore":
        module = import_module("bulletin_radar.database")
        return getattr(module, name)
    elif name == "FindingClassifier":
        module = import_module("bulletin_radar.classification")
        return getattr(module, name)
    elif name in ("PipelineConfig", "SourceRegistry"):
        module = import_module("bulletin_radar.config")
        return getattr(module, name)
    elif name in ("PipelineRunner", "run", "to_legacy_filings"):
        module = import_module("bulletin_radar.runner")
        return getattr(module, name)
    elif name == "is_relevant":
        module = import_module("bulletin_radar.relevance")
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(__all__)
