"""
Tests for environment-driven settings.
"""

import pytest

from ingest_agent.config import Settings, get_settings, parse_port


@pytest.mark.parametrize("raw, expected", [("8080", 8080), (":8080", 8080), (" 9000 ", 9000)])
def test_parse_port(raw, expected):
    assert parse_port(raw) == expected


@pytest.mark.parametrize("raw", ["http", "80a", ""])
def test_parse_port_rejects_non_integer(raw):
    with pytest.raises(ValueError) as exc_info:
        parse_port(raw)

    assert str(exc_info.value) == f"PORT [{raw}] must be int"


def test_defaults():
    settings = Settings()

    assert settings.port == 8080
    assert not settings.enable_remote_plugins
    assert settings.storage_backend == "memory"
    assert settings.collector_concurrency == 1


def test_get_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("PORT", ":9100")
    monkeypatch.setenv("ENABLE_REMOTE_PLUGINS", "true")
    monkeypatch.setenv("REMOTE_PLUGIN_LAUNCHERS", "http://a:1/boot, http://b:2/boot,")
    monkeypatch.setenv("STORAGE_BACKEND", "Postgres")
    monkeypatch.setenv("COLLECTOR_CONCURRENCY", "4")
    monkeypatch.setenv("LOG_JSON", "no")

    try:
        settings = get_settings(force_reload=True)

        assert settings.port == 9100
        assert settings.enable_remote_plugins
        assert settings.remote_plugin_launchers == ["http://a:1/boot", "http://b:2/boot"]
        assert settings.storage_backend == "postgres"
        assert settings.collector_concurrency == 4
        assert not settings.log_json
        assert get_settings() is settings
    finally:
        monkeypatch.undo()
        get_settings(force_reload=True)


def test_get_settings_rejects_bad_port(monkeypatch):
    monkeypatch.setenv("PORT", "eighty")

    try:
        with pytest.raises(ValueError):
            get_settings(force_reload=True)
    finally:
        monkeypatch.undo()
        get_settings(force_reload=True)
