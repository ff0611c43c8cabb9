"""Property-based tests for configuration models and loading.

Feature: roster-change-tracking
"""

import tempfile
from pathlib import Path

import pytest
import structlog
import yaml
from hypothesis import given, settings
from hypothesis import strategies as st
from pydantic import ValidationError

from roster_changes.models.config import (
    AppConfig,
    EntityDetectionSettings,
    HistoryConfig,
    PlanningConfig,
)
from roster_changes.utils.config_loader import ConfigLoader, ConfigurationError

log = structlog.stdlib.get_logger()


def _write_yaml(directory: Path, content: dict | str, name: str = "default.yaml") -> str:
    path = directory / name
    path.write_text(content if isinstance(content, str) else yaml.safe_dump(content))
    return str(path)


@given(
    st.integers(min_value=1, max_value=3650),
    st.integers(min_value=1, max_value=3650),
    st.integers(min_value=1, max_value=500),
)
@settings(max_examples=50)
def test_property_21_configuration_file_parsing(retention: int, threshold: int, chunk: int):
    """Property 21: Configuration file parsing.

    For any valid history settings written to YAML, loading the file yields
    the same values.

    **Feature: roster-change-tracking, Property 21: Configuration file parsing**
    """
    with tempfile.TemporaryDirectory() as tmp:
        path = _write_yaml(
            Path(tmp),
            {
                "history": {
                    "retention_period_days": retention,
                    "compression_threshold_days": threshold,
                    "batch_chunk_size": chunk,
                }
            },
        )
        config = ConfigLoader(config_dir=tmp).load_config(path)

    assert config.history.retention_period_days == retention
    assert config.history.compression_threshold_days == threshold
    assert config.history.batch_chunk_size == chunk
    log.info("configuration_round_trip_verified", retention=retention)


@given(st.floats(allow_nan=False).filter(lambda x: x < 0.0 or x > 100.0))
@settings(max_examples=50)
def test_significance_threshold_bounds(invalid_threshold: float):
    with pytest.raises(ValidationError):
        EntityDetectionSettings(significance_threshold=invalid_threshold)


def test_environment_variables_are_substituted(tmp_path, monkeypatch):
    monkeypatch.setenv("ROSTER_TEST_DATABASE_URL", "sqlite:///ledger.db")
    path = _write_yaml(tmp_path, {"history": {"database_url": "${ROSTER_TEST_DATABASE_URL}"}})

    config = ConfigLoader(config_dir=str(tmp_path)).load_config(path)

    assert config.history.database_url == "sqlite:///ledger.db"


def test_missing_environment_variable_is_reported(tmp_path, monkeypatch):
    monkeypatch.delenv("ROSTER_MISSING_VAR", raising=False)
    path = _write_yaml(tmp_path, {"history": {"database_url": "${ROSTER_MISSING_VAR}"}})

    with pytest.raises(ConfigurationError, match="ROSTER_MISSING_VAR"):
        ConfigLoader(config_dir=str(tmp_path)).load_config(path)


@pytest.mark.parametrize(
    "content",
    [
        "",
        "- just\n- a list\n",
        "history: [unclosed\n",
        "history:\n  retention_period_days: 0\n",
        "planning:\n  plan_severities: [urgent]\n",
    ],
)
def test_invalid_configuration_files_are_rejected(tmp_path, content: str):
    path = _write_yaml(tmp_path, content)

    with pytest.raises(ConfigurationError):
        ConfigLoader(config_dir=str(tmp_path)).load_config(path)


def test_missing_file_is_rejected(tmp_path):
    with pytest.raises(ConfigurationError):
        ConfigLoader(config_dir=str(tmp_path)).load_config(str(tmp_path / "absent.yaml"))
    with pytest.raises(ConfigurationError):
        ConfigLoader(config_dir=str(tmp_path)).load_config()


def test_app_env_selects_file_with_default_fallback(tmp_path, monkeypatch):
    _write_yaml(tmp_path, {"history": {"retention_period_days": 30}})
    _write_yaml(tmp_path, {"history": {"retention_period_days": 7}}, name="staging.yaml")
    loader = ConfigLoader(config_dir=str(tmp_path))

    monkeypatch.setenv("APP_ENV", "staging")
    assert loader.load_config().history.retention_period_days == 7

    monkeypatch.setenv("APP_ENV", "production")
    assert loader.load_config().history.retention_period_days == 30


def test_shipped_default_configuration_loads(monkeypatch):
    monkeypatch.delenv("APP_ENV", raising=False)
    loader = ConfigLoader()

    config = loader.load_config()

    assert config.detection.entity_types == ["user", "class", "organization", "enrollment"]
    assert "last_login_at" in config.detection.settings_for("user").ignore_fields
    assert config.history.database_url is None
    assert config.tracking.analytics.high_volume_threshold == 100
    assert loader.validate_config(config) == []


def test_environment_overrides_nested_settings(monkeypatch):
    monkeypatch.setenv("ROSTER_HISTORY__RETENTION_PERIOD_DAYS", "45")
    monkeypatch.setenv("ROSTER_TRACKING__ENABLE_NOTIFICATIONS", "true")

    config = AppConfig()

    assert config.history.retention_period_days == 45
    assert config.tracking.enable_notifications is True


def test_validate_config_warnings():
    config = AppConfig(
        history=HistoryConfig(
            enable_compression=True,
            compression_threshold_days=120,
            retention_period_days=90,
            default_query_limit=500,
            max_records_per_query=100,
        ),
        planning=PlanningConfig(
            high_priority_score=40.0,
            medium_priority_score=60.0,
            dependencies={"user": ["school"]},
        ),
    )

    warnings = ConfigLoader().validate_config(config)

    assert len(warnings) == 4
    assert "compression_threshold_days (120)" in warnings[0]
    assert "default_query_limit (500)" in warnings[1]
    assert "medium_priority_score (60.0)" in warnings[2]
    assert warnings[3] == "planning.dependencies reference unknown entity types: ['school']"
