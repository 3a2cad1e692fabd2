"""
Unit tests for the derived read caches and their invalidation.
"""

import json
from unittest.mock import MagicMock

import psycopg
import pytest

from philograph.core.cache import (
    CacheInvalidator,
    CacheNamespace,
    InMemoryCache,
    PostgresCache,
    cached_resolve,
    make_cache_key,
)
from philograph.core.hashing import canonical_json, payload_hash


class TestMakeCacheKey:

    def test_key_layout(self):
        assert make_cache_key(CacheNamespace.GRAPH, 'c-1') == 'graph:c-1'
        assert make_cache_key(CacheNamespace.ENRICHED_CATEGORY, 'c-1', 'cat-7') == 'enriched-category:c-1:cat-7'


class TestPayloadHash:

    def test_key_order_does_not_matter(self):
        assert payload_hash({'b': 1, 'a': [1, 2]}) == payload_hash({'a': [1, 2], 'b': 1})
        assert payload_hash({'a': 1}) != payload_hash({'a': 2})

    def test_canonical_form(self):
        assert canonical_json({'b': 1, 'a': None}) == '{"a":null,"b":1}'
        assert len(payload_hash({})) == 64


class TestInMemoryCache:

    def test_set_and_get(self):
        cache = InMemoryCache()
        cache.set('graph:c-1', {'categories': []})

        assert cache.get('graph:c-1') == {'categories': []}
        assert cache.get('graph:missing') is None

    def test_expiry(self, clock):
        cache = InMemoryCache(clock=clock)
        cache.set('graph:c-1', {'categories': []}, ttl_seconds=10)

        clock.advance(9)
        assert cache.get('graph:c-1') is not None

        clock.advance(1)
        assert cache.get('graph:c-1') is None
        assert len(cache) == 0

    def test_delete_prefix(self):
        cache = InMemoryCache()
        cache.set('enriched-category:c-1:a', 1)
        cache.set('enriched-category:c-1:b', 2)
        cache.set('enriched-category:c-10:a', 3)

        assert cache.delete_prefix('enriched-category:c-1:') == 2
        assert cache.keys() == ['enriched-category:c-10:a']


class TestCacheInvalidator:

    def test_removes_every_projection_of_a_concept(self):
        cache = InMemoryCache()
        for key in ('graph:c-1', 'concept:c-1', 'theses:c-1', 'enriched-category:c-1:cat-1'):
            cache.set(key, {'stale': True})
        cache.set('graph:c-2', {'fresh': True})
        cache.set('reasoning:validate-graph:abc', {'valid': True})

        removed = CacheInvalidator(cache).invalidate('c-1')

        assert removed == 4
        assert sorted(cache.keys()) == ['graph:c-2', 'reasoning:validate-graph:abc']

    def test_invalidate_many_deduplicates(self):
        cache = InMemoryCache()
        cache.set('graph:c-1', 1)
        cache.set('graph:c-2', 2)

        assert CacheInvalidator(cache).invalidate_many(['c-1', 'c-1', 'c-2']) == 2


class TestCachedResolve:

    def test_miss_then_hit(self):
        cache = InMemoryCache()
        resolver = MagicMock(return_value={'name': 'Stoicism'})

        first = cached_resolve(cache, 'concept:c-1', resolver)
        second = cached_resolve(cache, 'concept:c-1', resolver)

        assert first == second == {'name': 'Stoicism'}
        resolver.assert_called_once()

    def test_none_not_cached(self):
        cache = InMemoryCache()

        assert cached_resolve(cache, 'concept:missing', lambda: None) is None
        assert cache.keys() == []

    def test_resolver_errors_propagate(self):
        def broken():
            raise RuntimeError("store down")

        with pytest.raises(RuntimeError):
            cached_resolve(InMemoryCache(), 'graph:c-1', broken)


class TestPostgresCache:

    @pytest.fixture
    def pool(self):
        return MagicMock()

    @pytest.fixture
    def cur(self, pool):
        return pool.connection.return_value.__enter__.return_value.cursor.return_value.__enter__.return_value

    def test_hit(self, pool, cur):
        cur.fetchone.return_value = ({'valid': True},)

        assert PostgresCache(pool).get('reasoning:validate-graph:abc') == {'valid': True}

    def test_read_errors_are_a_miss(self, pool):
        pool.connection.side_effect = psycopg.OperationalError("down")

        assert PostgresCache(pool).get('graph:c-1') is None

    def test_set_serializes_value(self, pool, cur):
        PostgresCache(pool).set('graph:c-1', {'categories': []}, ttl_seconds=60)

        params = cur.execute.call_args[0][1]
        assert params == ('graph:c-1', json.dumps({'categories': []}), 60)

    def test_delete_prefix_escapes_like_wildcards(self, pool, cur):
        cur.rowcount = 2

        assert PostgresCache(pool).delete_prefix('enriched-category:c_1:') == 2
        assert cur.execute.call_args[0][1] == ('enriched-category:c\\_1:%',)

    def test_delete_errors_propagate(self, pool):
        pool.connection.side_effect = psycopg.OperationalError("down")

        with pytest.raises(psycopg.OperationalError):
            PostgresCache(pool).delete('graph:c-1')
