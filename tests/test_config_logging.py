"""
Configuration & structured logging tests.

Tests cover:
  - Testing config values used by the suite
  - ProductionConfig refuses to start without DATABASE_URL / SECRET_KEY
  - JSONFormatter / ReadableFormatter carry roster context fields
"""
import json
import logging

import pytest

from roster.config import ProductionConfig, config
from roster.middleware.logging_config import JSONFormatter, ReadableFormatter


def _record(**extra):
    record = logging.LogRecord("roster.test", logging.INFO, __file__, 10, "Delta resolved", (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestConfig:
    def test_testing_config(self, app):
        assert app.config["TESTING"] is True
        assert app.config["RATELIMIT_ENABLED"] is False
        assert app.config["RELATION_WINDOW_HOURS"] == 24
        assert app.config["RANK_SCOPE_POLICY"]["command_threshold"] == 4

    def test_mapping(self):
        assert config["default"] is config["development"]

    def test_production_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            ProductionConfig()

    def test_production_requires_secret_key(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", "postgresql://db/roster")
        monkeypatch.delenv("SECRET_KEY", raising=False)
        with pytest.raises(RuntimeError, match="SECRET_KEY"):
            ProductionConfig()


class TestFormatters:
    def test_json_includes_context(self):
        line = JSONFormatter().format(_record(delta_id=7, registry_id="1001", unrelated="x"))
        data = json.loads(line)
        assert data["message"] == "Delta resolved"
        assert data["delta_id"] == 7
        assert data["registry_id"] == "1001"
        assert "unrelated" not in data

    def test_readable_appends_context(self):
        line = ReadableFormatter().format(_record(import_id=3, duration_ms=12.0))
        assert "(import_id=3)" in line
        assert "[12ms]" in line
