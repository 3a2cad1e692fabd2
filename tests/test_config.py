"""
Unit tests for environment-driven configuration.
"""

import pytest

from philograph.config import PhiloGraphConfig, get_config, reload_config

ENV_VARS = (
    'STORE_BACKEND', 'DATABASE_URL', 'NEO4J_URI', 'NEO4J_USER', 'NEO4J_PASSWORD', 'MONGODB_URI', 'MONGODB_DATABASE',
    'REASONING_BASE_URL', 'BREAKER_FAILURE_THRESHOLD', 'SAGA_MAX_RETRIES', 'PLAN_WORKERS',
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestFromEnv:

    def test_defaults(self):
        config = PhiloGraphConfig.from_env()

        assert config.backend == 'memory'
        assert config.reasoning.failure_threshold == 5
        assert config.reasoning.reset_timeout == 30.0
        assert config.reasoning.cache_ttl == 3600
        assert config.saga.max_retries == 3
        assert config.saga.backoff_base == 0.2
        assert config.saga.store_step_timeout == 10.0
        assert config.saga.reasoning_step_timeout == 120.0

    def test_postgres_backend(self, monkeypatch):
        monkeypatch.setenv('STORE_BACKEND', 'postgres')
        monkeypatch.setenv('DATABASE_URL', 'postgresql://localhost/philograph')
        monkeypatch.setenv('NEO4J_URI', 'bolt://localhost:7687')
        monkeypatch.setenv('NEO4J_USER', 'neo4j')
        monkeypatch.setenv('NEO4J_PASSWORD', 'secret')
        monkeypatch.setenv('MONGODB_URI', 'mongodb://localhost:27017/?replicaSet=rs0')

        config = PhiloGraphConfig.from_env()

        assert config.backend == 'postgres'
        assert config.graph.is_configured()
        assert config.documents.mongodb_database == 'philograph'

    def test_postgres_without_document_store_falls_back_to_memory(self, monkeypatch):
        monkeypatch.setenv('STORE_BACKEND', 'postgres')
        monkeypatch.setenv('DATABASE_URL', 'postgresql://localhost/philograph')
        monkeypatch.setenv('NEO4J_URI', 'bolt://localhost:7687')
        monkeypatch.setenv('NEO4J_USER', 'neo4j')
        monkeypatch.setenv('NEO4J_PASSWORD', 'secret')

        assert PhiloGraphConfig.from_env().backend == 'memory'

    def test_incomplete_postgres_falls_back_to_memory(self, monkeypatch):
        monkeypatch.setenv('STORE_BACKEND', 'postgres')
        monkeypatch.setenv('DATABASE_URL', 'postgresql://localhost/philograph')

        assert PhiloGraphConfig.from_env().backend == 'memory'

    def test_invalid_backend_falls_back_to_memory(self, monkeypatch):
        monkeypatch.setenv('STORE_BACKEND', 'mongodb')

        assert PhiloGraphConfig.from_env().backend == 'memory'

    def test_numeric_overrides(self, monkeypatch):
        monkeypatch.setenv('BREAKER_FAILURE_THRESHOLD', '2')
        monkeypatch.setenv('PLAN_WORKERS', '8')

        config = PhiloGraphConfig.from_env()

        assert config.reasoning.failure_threshold == 2
        assert config.saga.plan_workers == 8

    def test_malformed_number_uses_default(self, monkeypatch):
        monkeypatch.setenv('SAGA_MAX_RETRIES', 'three')

        assert PhiloGraphConfig.from_env().saga.max_retries == 3


class TestGlobalConfig:

    def test_reload_replaces_cached_config(self, monkeypatch):
        monkeypatch.setenv('REASONING_BASE_URL', 'http://reasoning-a')
        first = reload_config()
        assert get_config() is first

        monkeypatch.setenv('REASONING_BASE_URL', 'http://reasoning-b')
        second = reload_config()

        assert get_config() is second
        assert second.reasoning.base_url == 'http://reasoning-b'
