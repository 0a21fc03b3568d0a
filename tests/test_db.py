"""Tests for database configuration."""

import pytest
from sqlalchemy import inspect

import config
from services import db
from services.errors import ConfigurationError


class TestCreateEngine:

    def test_missing_url_raises(self, monkeypatch):
        monkeypatch.setattr(config, "DB_URL", None)
        with pytest.raises(ConfigurationError):
            db.create_db_engine()

    def test_explicit_url_wins(self, monkeypatch):
        monkeypatch.setattr(config, "DB_URL", None)
        engine = db.create_db_engine("sqlite://")
        assert engine.url.get_backend_name() == "sqlite"


class TestInitDb:

    def test_creates_tables(self, monkeypatch):
        monkeypatch.setattr(db, "engine", None)
        bind = db.init_db("sqlite://")
        tables = inspect(bind).get_table_names()
        assert {"nodes", "network_history", "region_history"} <= set(tables)
