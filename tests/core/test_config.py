"""Tests for the Config system."""

import pytest
from pathlib import Path

from pushcast.core.config import (
    PushcastConfig,
    _convert_value,
    _deep_merge,
    _substitute_env_vars,
)
from pushcast.core.errors import ConfigError


@pytest.fixture
def no_files(tmp_path):
    """Paths that do not exist, so only env and overrides apply."""
    return {
        "project_path": tmp_path / "missing-project.toml",
        "user_path": tmp_path / "missing-user.toml",
    }


def test_default_config():
    """Default config has sensible values."""
    config = PushcastConfig()

    assert config.transport.provider == "log"
    assert config.transport.configured is False
    assert config.dispatch.batch_size == 500
    assert config.dispatch.max_concurrent_batches == 4
    assert config.scheduler.poll_interval == 60
    assert config.scheduler.claim_lease == 600
    assert config.scheduler.enabled is True


def test_load_with_overrides(no_files):
    """Explicit overrides take highest precedence."""
    config = PushcastConfig.load(
        overrides={
            "transport": {"provider": "fcm", "project_id": "demo", "access_token": "tok"},
            "dispatch": {"batch_size": 100},
        },
        **no_files,
    )

    assert config.transport.provider == "fcm"
    assert config.transport.configured is True
    assert config.dispatch.batch_size == 100
    # Defaults still work for non-overridden values
    assert config.dispatch.max_concurrent_batches == 4


def test_env_var_loading(monkeypatch, no_files):
    """PUSHCAST_* environment variables are loaded."""
    monkeypatch.setenv("PUSHCAST_TRANSPORT_PROVIDER", "fcm")
    monkeypatch.setenv("PUSHCAST_FCM_PROJECT_ID", "12345")
    monkeypatch.setenv("PUSHCAST_DISPATCH_BATCH_SIZE", "250")
    monkeypatch.setenv("PUSHCAST_SCHEDULER_POLL_INTERVAL", "5")

    config = PushcastConfig.load(**no_files)

    assert config.transport.provider == "fcm"
    assert config.transport.project_id == "12345"
    assert config.dispatch.batch_size == 250
    assert config.scheduler.poll_interval == 5


def test_overrides_beat_env(monkeypatch, no_files):
    monkeypatch.setenv("PUSHCAST_DISPATCH_BATCH_SIZE", "250")
    config = PushcastConfig.load(overrides={"dispatch": {"batch_size": 10}}, **no_files)
    assert config.dispatch.batch_size == 10


def test_toml_layers(tmp_path):
    """Project config overrides user config."""
    user = tmp_path / "user.toml"
    user.write_text('[transport]\nproject_id = "from-user"\n\n[scheduler]\npoll_interval = 30\n')
    project = tmp_path / "project.toml"
    project.write_text('[transport]\nproject_id = "from-project"\n')

    config = PushcastConfig.load(project_path=project, user_path=user)

    assert config.transport.project_id == "from-project"
    assert config.scheduler.poll_interval == 30


def test_broken_toml_raises_config_error(tmp_path):
    project = tmp_path / "project.toml"
    project.write_text("[transport\n")

    with pytest.raises(ConfigError):
        PushcastConfig.load(project_path=project, user_path=tmp_path / "none.toml")


@pytest.mark.parametrize("batch_size", [0, 501])
def test_batch_size_outside_transport_limit(no_files, batch_size):
    with pytest.raises(ConfigError):
        PushcastConfig.load(overrides={"dispatch": {"batch_size": batch_size}}, **no_files)


def test_unknown_provider_rejected(no_files):
    with pytest.raises(ConfigError):
        PushcastConfig.load(overrides={"transport": {"provider": "carrier-pigeon"}}, **no_files)


def test_env_var_substitution(monkeypatch):
    """${VAR} in config values gets replaced with env var values."""
    monkeypatch.setenv("MY_TOKEN", "secret123")
    data = {"key": "${HOME}/something", "nested": {"api": "${MY_TOKEN}"}}

    _substitute_env_vars(data)

    assert "something" in data["key"]
    assert data["nested"]["api"] == "secret123"


def test_deep_merge():
    base = {"a": 1, "b": {"c": 2, "d": 3}, "e": 5}
    override = {"b": {"c": 20, "f": 6}, "g": 7}

    _deep_merge(base, override)

    assert base == {"a": 1, "b": {"c": 20, "d": 3, "f": 6}, "e": 5, "g": 7}


def test_convert_value():
    assert _convert_value("true") is True
    assert _convert_value("No") is False
    assert _convert_value("42") == 42
    assert _convert_value("2.5") == 2.5
    assert _convert_value("fcm") == "fcm"


def test_service_account_alone_is_configured(monkeypatch, no_files):
    monkeypatch.setenv("PUSHCAST_TRANSPORT_PROVIDER", "fcm")
    monkeypatch.setenv("PUSHCAST_FCM_SERVICE_ACCOUNT", "eyJ0eXBlIjoic2VydmljZV9hY2NvdW50In0=")

    config = PushcastConfig.load(**no_files)

    assert config.transport.service_account == "eyJ0eXBlIjoic2VydmljZV9hY2NvdW50In0="
    assert config.transport.project_id == ""
    assert config.transport.configured is True
