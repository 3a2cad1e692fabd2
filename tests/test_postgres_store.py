"""
Unit tests for the Postgres adapters, run against a mocked connection pool.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg
import pytest
from psycopg_pool import PoolTimeout

from philograph.core.errors import ConflictError, NotFoundError, UnavailableError
from philograph.core.models import Concept, ConceptStatus
from philograph.api.dependencies import close_connection_pool, init_connection_pool
from philograph.saga.locks import PostgresAdvisoryLocks
from philograph.storage.postgres_store import PostgresConceptStore, translate_errors

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _concept_row(concept_id='c-1', name='Stoicism', status='draft'):
    return (concept_id, name, '', status, False, [], None, None, None, NOW, NOW)


@pytest.fixture
def pool():
    return MagicMock()


@pytest.fixture
def conn(pool):
    return pool.connection.return_value.__enter__.return_value


@pytest.fixture
def cur(conn):
    return conn.cursor.return_value.__enter__.return_value


class TestTranslateErrors:

    def test_integrity_error_is_conflict(self):
        with pytest.raises(ConflictError):
            with translate_errors("insert"):
                raise psycopg.errors.UniqueViolation("duplicate key")

    @pytest.mark.parametrize('error', [
        psycopg.OperationalError("connection refused"),
        PoolTimeout("no connection available"),
    ])
    def test_connection_errors_are_unavailable(self, error):
        with pytest.raises(UnavailableError) as exc_info:
            with translate_errors("select"):
                raise error

        assert exc_info.value.retryable

    def test_other_errors_pass_through(self):
        with pytest.raises(KeyError):
            with translate_errors("select"):
                raise KeyError("row")


class TestPostgresConceptStore:

    def test_create_concept(self, pool, cur):
        cur.fetchone.return_value = _concept_row()
        store = PostgresConceptStore(pool)

        created = store.create_concept(Concept(id='c-1', name='Stoicism'))

        assert created.id == 'c-1'
        assert created.created_at == NOW
        params = cur.execute.call_args[0][1]
        assert params[0] == 'c-1'
        assert params[3] == 'draft'

    def test_duplicate_concept(self, pool, cur):
        cur.execute.side_effect = psycopg.errors.UniqueViolation("duplicate key")
        store = PostgresConceptStore(pool)

        with pytest.raises(ConflictError):
            store.create_concept(Concept(id='c-1', name='Stoicism'))

    def test_get_missing_concept(self, pool, cur):
        cur.fetchone.return_value = None

        assert PostgresConceptStore(pool).get_concept('missing') is None

    def test_update_builds_whitelisted_assignments(self, pool, cur):
        cur.fetchone.return_value = _concept_row(status='archived')
        store = PostgresConceptStore(pool)

        updated = store.set_status('c-1', ConceptStatus.ARCHIVED)

        sql, params = cur.execute.call_args[0]
        assert 'status = %s' in sql
        assert params == ('archived', 'c-1')
        assert updated.is_archived

    def test_update_rejects_unknown_columns(self, pool, cur):
        with pytest.raises(ConflictError):
            PostgresConceptStore(pool).update_concept('c-1', {'concept_id': 'other'})

        cur.execute.assert_not_called()

    def test_update_missing_concept(self, pool, cur):
        cur.fetchone.return_value = None

        with pytest.raises(NotFoundError):
            PostgresConceptStore(pool).update_concept('missing', {'name': 'x'})

    def test_get_concepts_keeps_requested_order(self, pool, cur):
        cur.fetchall.return_value = [_concept_row('a', 'A'), _concept_row('b', 'B')]

        concepts = PostgresConceptStore(pool).get_concepts(['b', 'a'])

        assert [c.id for c in concepts] == ['b', 'a']

    def test_health_check(self, pool, cur):
        assert PostgresConceptStore(pool).is_available() is True

        pool.connection.side_effect = psycopg.OperationalError("down")
        assert PostgresConceptStore(pool).is_available() is False


class TestConnectionSetup:

    def test_pool_bounds_statements(self):
        with patch('philograph.api.dependencies.ConnectionPool') as pool_cls:
            init_connection_pool('postgresql://localhost/philograph', statement_timeout=10.0)
        close_connection_pool()

        assert pool_cls.call_args[1]['kwargs'] == {'options': '-c statement_timeout=10000'}

    def test_advisory_locks_wait_without_statement_timeout(self, pool, conn):
        with PostgresAdvisoryLocks(pool).hold(['b', 'a']):
            pass

        statements = [c[0][0] for c in conn.execute.call_args_list]
        assert statements[0] == "SET statement_timeout = 0"
        assert statements[-1] == "RESET statement_timeout"
        assert [c[0][1] for c in conn.execute.call_args_list[1:3]] == [('a',), ('b',)]
