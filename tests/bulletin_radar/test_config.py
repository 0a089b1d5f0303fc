from pathlib import Path

import pytest

from bulletin_radar.config import DEFAULT_SOURCES_PATH, PipelineConfig, SourceRegistry
from bulletin_radar.errors import ConfigurationError, RegistryError
from bulletin_radar.models import SourceStrategy


def test_from_env_defaults():
    config = PipelineConfig.from_env({})

    assert config.fetch_timeout_ms == 30000
    assert config.source_delay_ms == 2000
    assert config.persist_concurrency == 5
    assert config.retry_attempts == 3
    assert config.retry_base_delay == 1.0
    assert config.sources_path == DEFAULT_SOURCES_PATH
    assert config.db_path == Path("database/bulletin_radar.db")
    assert config.dev_apps_url == "https://www.toronto.ca/devapps/api/projects.json"
    assert config.dev_apps_timeout_ms == 10000
    assert config.dev_apps_types == ("all",)
    assert config.fetch_timeout_seconds == 30.0


def test_from_env_overrides():
    config = PipelineConfig.from_env(
        {
            "RADAR_FETCH_TIMEOUT_MS": "5000",
            "RADAR_SOURCE_DELAY_MS": "0",
            "RADAR_PERSIST_CONCURRENCY": "2",
            "RADAR_RETRY_BASE_DELAY": "0.5",
            "RADAR_USER_AGENT": "Custom/2.0",
            "RADAR_DB_PATH": "/tmp/radar.db",
            "RADAR_URL_CANLII_ONSC": "https://mirror.example.test/onsc.xml",
            "RADAR_DEV_APPS_TYPES": " Rezoning, subdivision ,,",
            "UNRELATED": "ignored",
        }
    )

    assert config.fetch_timeout_ms == 5000
    assert config.source_delay_ms == 0
    assert config.persist_concurrency == 2
    assert config.retry_base_delay == 0.5
    assert config.user_agent == "Custom/2.0"
    assert config.db_path == Path("/tmp/radar.db")
    assert config.source_url_overrides == {"canlii_onsc": "https://mirror.example.test/onsc.xml"}
    assert config.dev_apps_types == ("rezoning", "subdivision")


@pytest.mark.parametrize(
    "name, value",
    [
        ("RADAR_FETCH_TIMEOUT_MS", "soon"),
        ("RADAR_FETCH_TIMEOUT_MS", "0"),
        ("RADAR_PERSIST_CONCURRENCY", "0"),
        ("RADAR_RETRY_BASE_DELAY", "-1"),
    ],
)
def test_from_env_rejects_invalid_values(name, value):
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_env({name: value})


def test_bundled_registry_covers_gta():
    registry = SourceRegistry()

    sources = registry.sources_for("GTA")
    ids = [source.source_id for source in sources]

    assert "canlii_onsc" in ids
    assert "ontario_court_lists" in ids
    court_lists = registry.get_source("ontario_court_lists")
    assert court_lists.strategy is SourceStrategy.WEBPAGE
    assert court_lists.permitted is True
    assert registry.get_source("ontario_gazette").permitted is False


def test_registry_unknown_region_raises():
    with pytest.raises(RegistryError):
        SourceRegistry().sources_for("atlantis")


def test_registry_applies_url_overrides():
    config = PipelineConfig.from_env({"RADAR_URL_CANLII_ONSC": "https://mirror.example.test/onsc.xml"})
    registry = SourceRegistry.from_config(config)
    assert registry.get_source("canlii_onsc").fetch_url == "https://mirror.example.test/onsc.xml"


def test_registry_missing_file_raises(tmp_path):
    with pytest.raises(RegistryError):
        SourceRegistry(tmp_path / "missing.yaml")


def test_registry_rejects_unknown_strategy(tmp_path):
    path = tmp_path / "sources.yaml"
    path.write_text(
        "sources:\n  odd:\n    name: Odd\n    url: https://odd.test/\n    strategy: carrier_pigeon\n    regions: [gta]\n",
        encoding="utf-8",
    )
    with pytest.raises(RegistryError):
        SourceRegistry(path)


def test_registry_invalid_yaml_raises(tmp_path):
    path = tmp_path / "sources.yaml"
    path.write_text("sources: [unclosed", encoding="utf-8")
    with pytest.raises(RegistryError):
        SourceRegistry(path)
