"""Tests for YAML settings loading."""
from pathlib import Path

import pytest

from courier import config
from courier.config import AppSettings, StorageSettings, get_config, load_settings, reset_config


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


def test_missing_file_gives_defaults(tmp_path):
    settings = load_settings(tmp_path / "absent.yaml")

    assert settings == AppSettings()
    assert settings.messaging.default_page_size == 50
    assert settings.messaging.max_page_size == 100
    assert settings.messaging.enforce_community_membership is True
    assert settings.uploads.allowed_mime_prefixes == ["image/", "video/"]


def test_yaml_overrides_sections(tmp_path):
    path = tmp_path / "courier.settings.yaml"
    path.write_text(
        "server:\n"
        "  port: 9100\n"
        "messaging:\n"
        "  max_page_size: 20\n"
        "  enforce_community_membership: false\n",
        encoding="utf-8",
    )

    settings = load_settings(path)

    assert settings.server.port == 9100
    assert settings.server.host == "0.0.0.0"
    assert settings.messaging.max_page_size == 20
    assert settings.messaging.enforce_community_membership is False
    assert settings.storage.data_dir == "./data"


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    assert load_settings(path) == AppSettings()


def test_invalid_page_size_is_rejected(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("messaging:\n  max_page_size: 0\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_settings(path)


def test_env_var_selects_file(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("logging:\n  level: debug\n", encoding="utf-8")
    monkeypatch.setenv(config.SETTINGS_ENV_VAR, str(path))

    assert config.settings_path() == path
    assert get_config().logging.level == "debug"


def test_get_config_is_cached(tmp_path, monkeypatch):
    monkeypatch.setenv(config.SETTINGS_ENV_VAR, str(tmp_path / "absent.yaml"))

    first = get_config()
    assert get_config() is first

    reset_config()
    assert get_config() is not first


def test_default_settings_path(monkeypatch):
    monkeypatch.delenv(config.SETTINGS_ENV_VAR, raising=False)

    assert config.settings_path() == Path("courier.settings.yaml")


class TestStoragePaths:

    def test_memory_passthrough(self):
        storage = StorageSettings(data_dir=":memory:")

        assert storage.path_for("messages.duckdb") == ":memory:"

    def test_file_path_creates_directory(self, tmp_path):
        data_dir = tmp_path / "nested" / "data"
        storage = StorageSettings(data_dir=str(data_dir))

        path = storage.path_for("messages.duckdb")

        assert path == str(data_dir / "messages.duckdb")
        assert data_dir.is_dir()


def test_server_settings_fields():
    assert set(AppSettings().server.model_dump()) == {"host", "port", "allowed_origins"}
