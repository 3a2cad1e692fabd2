"""
PhiloGraph - Read Projections

Cached, concept-derived read models used by plan steps. Entries live under
the keys the CacheInvalidator removes after every committed mutation, so a
projection is never older than the last committed write to its concept.
"""

from typing import Any, Dict, List, Optional

from philograph.core.cache import (
    Cache,
    CacheNamespace,
    DEFAULT_TTL_SECONDS,
    cached_resolve,
    make_cache_key,
)
from philograph.core.models import ConceptGraph, Thesis
from philograph.storage.base import Stores


class ProjectionReader:

    def __init__(self, stores: Stores, cache: Cache, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.stores = stores
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def graph(self, concept_id: str) -> ConceptGraph:
        payload = cached_resolve(
            self.cache,
            make_cache_key(CacheNamespace.GRAPH, concept_id),
            lambda: self.stores.graphs.get_graph(concept_id).to_payload(),
            self.ttl_seconds,
        )
        return ConceptGraph.from_payload(payload)

    def theses(self, concept_id: str) -> List[Thesis]:
        payload = cached_resolve(
            self.cache,
            make_cache_key(CacheNamespace.THESES, concept_id),
            lambda: [t.to_dict() for t in self.stores.documents.get_theses_by_concept(concept_id)],
            self.ttl_seconds,
        )
        return [Thesis.from_dict(item) for item in payload]

    def enrichment(self, concept_id: str, category_id: str) -> Optional[Dict[str, Any]]:
        return self.cache.get(make_cache_key(CacheNamespace.ENRICHED_CATEGORY, concept_id, category_id))

    def put_enrichment(self, concept_id: str, category_id: str, enrichment: Dict[str, Any]) -> None:
        self.cache.set(
            make_cache_key(CacheNamespace.ENRICHED_CATEGORY, concept_id, category_id),
            enrichment,
            self.ttl_seconds,
        )
