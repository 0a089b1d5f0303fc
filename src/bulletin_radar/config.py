"""Configuration loading for the bulletin radar pipeline.

``PipelineConfig`` is read once from ``RADAR_*`` environment variables and
passed explicitly to the fetcher, writer and runner. ``SourceRegistry`` loads
the YAML file describing every upstream feed.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from .errors import ConfigurationError, RegistryError
from .models import Source, SourceStrategy

PACKAGE_DATA_DIR = Path(__file__).resolve().parent / "data"
DEFAULT_SOURCES_PATH = PACKAGE_DATA_DIR / "sources.yaml"
DEFAULT_DB_PATH = Path("database/bulletin_radar.db")
DEFAULT_USER_AGENT = "BulletinRadar/1.0 (+public legal notice monitor)"
DEFAULT_DEV_APPS_URL = "https://www.toronto.ca/devapps/api/projects.json"

ENV_PREFIX = "RADAR_"
URL_OVERRIDE_PREFIX = "RADAR_URL_"


def _read_int(environ: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _read_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {value}")
    return value


@dataclass(frozen=True)
class PipelineConfig:
    """Runtime settings shared by every pipeline component."""

    fetch_timeout_ms: int = 30000
    source_delay_ms: int = 2000
    persist_concurrency: int = 5
    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    retry_exponential_base: float = 2.0
    user_agent: str = DEFAULT_USER_AGENT
    sources_path: Path = DEFAULT_SOURCES_PATH
    db_path: Path = DEFAULT_DB_PATH
    source_url_overrides: Dict[str, str] = field(default_factory=dict)
    dev_apps_url: str = DEFAULT_DEV_APPS_URL
    dev_apps_timeout_ms: int = 10000
    dev_apps_municipality: str = "Toronto"
    dev_apps_types: Tuple[str, ...] = ("all",)

    @property
    def fetch_timeout_seconds(self) -> float:
        return self.fetch_timeout_ms / 1000.0

    @property
    def source_delay_seconds(self) -> float:
        return self.source_delay_ms / 1000.0

    @property
    def dev_apps_timeout_seconds(self) -> float:
        return self.dev_apps_timeout_ms / 1000.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        """Build a config from ``RADAR_*`` variables, falling back to defaults."""
        env = os.environ if environ is None else environ

        overrides = {
            key[len(URL_OVERRIDE_PREFIX):].lower(): value.strip()
            for key, value in env.items()
            if key.startswith(URL_OVERRIDE_PREFIX) and value.strip()
        }

        sources_file = env.get("RADAR_SOURCES_FILE", "").strip()
        db_path = env.get("RADAR_DB_PATH", "").strip()
        dev_apps_types = tuple(
            part.strip().lower() for part in env.get("RADAR_DEV_APPS_TYPES", "").split(",") if part.strip()
        )

        return cls(
            fetch_timeout_ms=_read_int(env, "RADAR_FETCH_TIMEOUT_MS", 30000, minimum=1),
            source_delay_ms=_read_int(env, "RADAR_SOURCE_DELAY_MS", 2000),
            persist_concurrency=_read_int(env, "RADAR_PERSIST_CONCURRENCY", 5, minimum=1),
            retry_attempts=_read_int(env, "RADAR_RETRY_ATTEMPTS", 3, minimum=1),
            retry_base_delay=_read_float(env, "RADAR_RETRY_BASE_DELAY", 1.0),
            user_agent=env.get("RADAR_USER_AGENT", "").strip() or DEFAULT_USER_AGENT,
            sources_path=Path(sources_file) if sources_file else DEFAULT_SOURCES_PATH,
            db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
            source_url_overrides=overrides,
            dev_apps_url=env.get("RADAR_DEV_APPS_URL", "").strip() or DEFAULT_DEV_APPS_URL,
            dev_apps_timeout_ms=_read_int(env, "RADAR_DEV_APPS_TIMEOUT_MS", 10000, minimum=1),
            dev_apps_types=dev_apps_types or ("all",),
        )

    def with_overrides(self, **changes: Any) -> "PipelineConfig":
        return replace(self, **changes)


class SourceRegistry:
    """Registry of upstream sources, loaded from YAML."""

    def __init__(
        self,
        config_path: Optional[Union[Path, str]] = None,
        url_overrides: Optional[Mapping[str, str]] = None,
    ) -> None:
        path = Path(config_path) if config_path else DEFAULT_SOURCES_PATH
        if not path.is_absolute():
            path = Path.cwd() / path
        self.config_path = path
        self._url_overrides = {key.lower(): value for key, value in (url_overrides or {}).items()}
        self._data = self._load_config()
        self._sources = self._build_sources()

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "SourceRegistry":
        return cls(config.sources_path, url_overrides=config.source_url_overrides)

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RegistryError(f"Source registry not found: {self.config_path}")
        try:
            with open(self.config_path, "r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise RegistryError(f"Source registry is not valid YAML: {self.config_path}") from exc
        if not isinstance(data, dict) or not isinstance(data.get("sources", {}), dict):
            raise RegistryError(f"Source registry must map source ids to definitions: {self.config_path}")
        return data

    def _build_sources(self) -> Dict[str, Source]:
        sources: Dict[str, Source] = {}
        for source_id, entry in self._data.get("sources", {}).items():
            if not isinstance(entry, dict):
                raise RegistryError(f"Source {source_id!r} must be a mapping")
            url = self._url_overrides.get(str(source_id).lower(), entry.get("url", ""))
            if not url:
                raise RegistryError(f"Source {source_id!r} has no url")
            strategy_name = str(entry.get("strategy", "rss")).lower()
            try:
                strategy = SourceStrategy(strategy_name)
            except ValueError as exc:
                raise RegistryError(f"Source {source_id!r} has unknown strategy {strategy_name!r}") from exc
            sources[source_id] = Source(
                source_id=source_id,
                name=entry.get("name", source_id),
                jurisdiction=entry.get("jurisdiction", ""),
                fetch_url=url,
                strategy=strategy,
                permitted=bool(entry.get("permitted", True)),
                regions=tuple(str(region).lower() for region in entry.get("regions", [])),
                selectors=dict(entry.get("selectors") or {}),
            )
        return sources

    @property
    def regions(self) -> List[str]:
        declared = self._data.get("regions")
        if declared:
            return [str(region).lower() for region in declared]
        seen: List[str] = []
        for source in self._sources.values():
            for region in source.regions:
                if region not in seen:
                    seen.append(region)
        return seen

    def get_source(self, source_id: str) -> Optional[Source]:
        return self._sources.get(source_id)

    def all_sources(self) -> List[Source]:
        return list(self._sources.values())

    def sources_for(self, region: str) -> List[Source]:
        """Return the sources covering ``region``, in registry order."""
        key = region.strip().lower()
        if key not in self.regions:
            raise RegistryError(f"Unknown region: {region!r}")
        return [source for source in self._sources.values() if key in source.regions]
