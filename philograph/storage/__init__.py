"""
PhiloGraph - Store Adapters

One adapter per independently-operated store:
- Relational (Postgres): Concept metadata, lifecycle owner
- Graph (Neo4j): Categories and Relationships
- Document (MongoDB): Theses and SynthesisProvenance

In-memory implementations back development mode and the test suite.
"""

from philograph.storage.base import (
    ConceptStore,
    DocumentStore,
    GraphStore,
    StoreFactory,
    Stores,
)
from philograph.storage.memory_store import (
    InMemoryConceptStore,
    InMemoryDocumentStore,
    InMemoryGraphStore,
)

__all__ = [
    'ConceptStore',
    'GraphStore',
    'DocumentStore',
    'Stores',
    'StoreFactory',
    'InMemoryConceptStore',
    'InMemoryGraphStore',
    'InMemoryDocumentStore',
]
