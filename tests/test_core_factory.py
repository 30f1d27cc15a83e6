"""Tests for nightfix/core/factory.py — ComponentFactory.

Uses real component initialization with the file state store; the
PostgreSQL variant is skipped when no database is reachable.
"""

from pathlib import Path

import pytest

from nightfix.core.exceptions import AllCredentialsExhausted
from nightfix.core.factory import ComponentBundle, ComponentFactory
from nightfix.db.state_store import FileStateStore, PostgresStateStore

from tests.conftest import requires_postgres, runner_app_config


class TestComponentFactory:
    def test_create_returns_bundle(self, tmp_path):
        bundle = ComponentFactory.create(config=runner_app_config(tmp_path))
        try:
            assert isinstance(bundle, ComponentBundle)
            assert isinstance(bundle.state_store, FileStateStore)
            assert bundle.db_engine is None
            assert len(bundle.credential_pool) == 1
            assert bundle.rotation_client.pool is bundle.credential_pool
            assert bundle.rotation_client.llm_client is bundle.llm_client
            assert bundle.analyzer.rotation_client is bundle.rotation_client
            assert bundle.autofix.sandbox is bundle.sandbox
            assert bundle.scheduler.credential_pool is bundle.credential_pool
            assert bundle.events.jsonl_path == tmp_path / "events.jsonl"
        finally:
            ComponentFactory.close(bundle)

    def test_model_timeout_applied_to_client(self, tmp_path):
        config = runner_app_config(tmp_path)
        config.run.model_timeout_ms = 45_000
        bundle = ComponentFactory.create(config=config)
        try:
            assert bundle.llm_client.timeout_seconds == 45.0
        finally:
            ComponentFactory.close(bundle)

    def test_no_keys_aborts(self, tmp_path):
        with pytest.raises(AllCredentialsExhausted):
            ComponentFactory.create(config=runner_app_config(tmp_path, keys=[]))

    def test_from_config_dir(self, config_dir, monkeypatch, tmp_path):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("NIGHTFIX_API_KEYS", "sk-one,sk-two")
        monkeypatch.chdir(tmp_path)
        bundle = ComponentFactory.create(config_dir=config_dir)
        try:
            assert len(bundle.credential_pool) == 2
            assert bundle.analyzer._prompt_loader.prompts_dir == config_dir / "prompts"
            assert bundle.llm_client.timeout_seconds == bundle.config.run.model_timeout_ms / 1000.0
            assert "timeout_seconds" not in bundle.config.llm.model_dump()
        finally:
            ComponentFactory.close(bundle)


@requires_postgres
class TestPostgresBackend:
    def test_postgres_state_store(self, tmp_path, db_config):
        config = runner_app_config(tmp_path)
        config.database = db_config
        bundle = ComponentFactory.create(config=config)
        try:
            assert isinstance(bundle.state_store, PostgresStateStore)
            assert bundle.db_engine is not None
        finally:
            ComponentFactory.close(bundle)
