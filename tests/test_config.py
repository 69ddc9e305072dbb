import json
import logging

from esg_builder.config import FALLBACK_ORIGINS, Settings
from esg_builder.logging import JsonFormatter


def test_defaults(monkeypatch):
    for key in ("DATABASE_URL", "MAX_TREE_DEPTH", "BACKEND_ALLOWED_ORIGINS", "PATH_SEPARATOR"):
        monkeypatch.delenv(key, raising=False)

    settings = Settings.from_env()

    assert settings.database_url.startswith("sqlite+aiosqlite:///")
    assert settings.max_tree_depth == 64
    assert settings.path_separator == "/"
    assert settings.clone_suffix == " (Copy)"
    assert settings.allowed_origins == FALLBACK_ORIGINS


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://esg@db/esg")
    monkeypatch.setenv("MAX_TREE_DEPTH", "not-a-number")
    monkeypatch.setenv("BACKEND_ALLOWED_ORIGINS", "https://a.example, ,https://b.example")
    monkeypatch.setenv("SQL_ECHO", "yes")

    settings = Settings.from_env()

    assert settings.database_url == "postgresql+asyncpg://esg@db/esg"
    assert settings.max_tree_depth == 64
    assert settings.allowed_origins == ["https://a.example", "https://b.example"]
    assert settings.sql_echo is True


def test_json_formatter_passes_extra_fields():
    record = logging.LogRecord(
        "esg_builder.test", logging.INFO, __file__, 1, "moved %s", ("Usage",), None
    )
    record.variable_id = 7
    record.lever = object()

    payload = json.loads(JsonFormatter().format(record))

    assert payload["msg"] == "moved Usage"
    assert payload["level"] == "INFO"
    assert payload["variable_id"] == 7
    assert isinstance(payload["lever"], str)
