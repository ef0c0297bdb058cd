"""
Tests for the YAML config loader.
Run with: pytest tests/test_config.py
"""

import pytest

from chatrelay import config


@pytest.fixture(autouse=True)
def reset_cache():
    config.set_config(None)
    yield
    config.set_config(None)


def test_env_vars_resolved(tmp_path, monkeypatch):
    monkeypatch.setenv("RELAY_TEST_URL", "http://backend.test")
    path = tmp_path / "config.yaml"
    path.write_text(
        "backend:\n"
        "  backend_url: ${RELAY_TEST_URL}\n"
        "  api_key: ${RELAY_TEST_UNSET}\n"
        "auth:\n"
        "  keys:\n"
        "    - key: prefix-${RELAY_TEST_URL}\n"
    )
    cfg = config.load_config(path)
    assert cfg["backend"]["backend_url"] == "http://backend.test"
    assert cfg["backend"]["api_key"] == ""
    assert cfg["auth"]["keys"][0]["key"] == "prefix-http://backend.test"


def test_config_is_cached(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("server:\n  port: 9000\n")
    first = config.load_config(path)
    path.write_text("server:\n  port: 9001\n")
    assert config.get_config() is first
    assert config.load_config()["server"]["port"] == 9000


def test_env_path_override(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("server:\n  name: custom\n")
    monkeypatch.setenv("CHATRELAY_CONFIG", str(path))
    assert config.get_config()["server"]["name"] == "custom"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        config.load_config(tmp_path / "absent.yaml")


def test_empty_file_is_empty_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert config.load_config(path) == {}


def test_set_config_resolves(monkeypatch):
    monkeypatch.setenv("RELAY_TEST_KEY", "abc")
    config.set_config({"auth": {"keys": [{"key": "${RELAY_TEST_KEY}"}]}})
    assert config.get_config()["auth"]["keys"][0]["key"] == "abc"


def test_shipped_config_loads(monkeypatch):
    monkeypatch.delenv("CHATRELAY_CONFIG", raising=False)
    cfg = config.load_config(config._CONFIG_PATH)
    assert cfg["providers"]["primary"] == "backend"
    assert cfg["auth"]["allow_anonymous"] is False
    assert cfg["gateway"]["stream_chunk_words"] == 5
