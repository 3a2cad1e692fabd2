"""
PhiloGraph - Store Adapter Interfaces

Three narrow adapters, one per store. The coordinator depends only on these
interfaces, never on a store technology.

DESIGN PRINCIPLES:
1. Single-entity create/get/update/delete per owned entity type
2. Batched reads by concept id
3. Batch creates run in ONE store transaction (per-store atomicity)
4. Writes return entities with server-assigned fields populated
   (ids when the caller left them empty, timestamps always)
5. No cross-store validation; only the store's own invariants
6. Errors are NotFoundError, ConflictError or UnavailableError
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from dataclasses import dataclass
import logging

from philograph.core.models import (
    Category,
    Concept,
    ConceptGraph,
    ConceptStatus,
    Relationship,
    SynthesisProvenance,
    Thesis,
)

logger = logging.getLogger(__name__)


class ConceptStore(ABC):
    """
    Relational store adapter (Concept metadata).

    Implementations:
    - PostgresConceptStore: authoritative
    - InMemoryConceptStore: development and tests
    """

    @abstractmethod
    def create_concept(self, concept: Concept) -> Concept:
        """
        Insert a concept.

        Raises:
            ConflictError: If a concept with the same id exists
        """

    @abstractmethod
    def get_concept(self, concept_id: str) -> Optional[Concept]:
        """Return the concept, or None if it does not exist."""

    @abstractmethod
    def get_concepts(self, concept_ids: List[str]) -> List[Concept]:
        """Batched read; missing ids are skipped, order follows concept_ids."""

    @abstractmethod
    def update_concept(self, concept_id: str, changes: Dict[str, Any]) -> Concept:
        """
        Apply field changes and bump last_modified.

        Raises:
            NotFoundError: If the concept does not exist
        """

    @abstractmethod
    def set_status(self, concept_id: str, status: ConceptStatus) -> Concept:
        """
        Transition status (archived is the soft delete).

        Raises:
            NotFoundError: If the concept does not exist
        """

    @abstractmethod
    def delete_concept(self, concept_id: str) -> bool:
        """
        Hard delete.

        ONLY used to compensate a creation inside a failed plan. Users
        archive concepts instead.

        Returns:
            True if a row was removed
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Health check."""

    def get_store_name(self) -> str:
        return type(self).__name__


class GraphStore(ABC):
    """
    Graph store adapter (Categories and Relationships).

    Store invariant: a Relationship's endpoints belong to the same concept.
    Violations raise ConflictError.
    """

    @abstractmethod
    def create_category(self, category: Category) -> Category:
        """Insert one category."""

    @abstractmethod
    def get_category(self, category_id: str) -> Optional[Category]:
        """Return the category, or None."""

    @abstractmethod
    def update_category(self, category_id: str, changes: Dict[str, Any]) -> Category:
        """
        Raises:
            NotFoundError: If the category does not exist
        """

    @abstractmethod
    def delete_category(self, category_id: str) -> bool:
        """Delete a category and every relationship attached to it."""

    @abstractmethod
    def create_relationship(self, relationship: Relationship) -> Relationship:
        """
        Raises:
            NotFoundError: If an endpoint does not exist
            ConflictError: If endpoints belong to different concepts
        """

    @abstractmethod
    def get_relationship(self, relationship_id: str) -> Optional[Relationship]:
        """Return the relationship, or None."""

    @abstractmethod
    def update_relationship(self, relationship_id: str, changes: Dict[str, Any]) -> Relationship:
        """
        Raises:
            NotFoundError: If the relationship does not exist
        """

    @abstractmethod
    def delete_relationship(self, relationship_id: str) -> bool:
        """Delete one relationship."""

    @abstractmethod
    def get_categories_by_concept(self, concept_id: str) -> List[Category]:
        """Batched read."""

    @abstractmethod
    def get_relationships_by_concept(self, concept_id: str) -> List[Relationship]:
        """Batched read."""

    @abstractmethod
    def create_graph(self, graph: ConceptGraph) -> ConceptGraph:
        """
        Insert all categories then all relationships in one store transaction.

        Either every element is written or none is.
        """

    @abstractmethod
    def delete_graph_elements(self, category_ids: List[str], relationship_ids: List[str]) -> int:
        """
        Delete the given elements in one store transaction.

        Missing ids are ignored. Returns number of elements removed.
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Health check."""

    def get_graph(self, concept_id: str) -> ConceptGraph:
        """Assemble the full graph of one concept from batched reads."""
        return ConceptGraph(
            concept_id=concept_id,
            categories=self.get_categories_by_concept(concept_id),
            relationships=self.get_relationships_by_concept(concept_id),
        )

    def get_store_name(self) -> str:
        return type(self).__name__


class DocumentStore(ABC):
    """
    Document store adapter (Theses and SynthesisProvenance).
    """

    @abstractmethod
    def create_thesis(self, thesis: Thesis) -> Thesis:
        """Insert one thesis."""

    @abstractmethod
    def get_thesis(self, thesis_id: str) -> Optional[Thesis]:
        """Return the thesis, or None."""

    @abstractmethod
    def update_thesis(self, thesis_id: str, changes: Dict[str, Any]) -> Thesis:
        """
        Raises:
            NotFoundError: If the thesis does not exist
        """

    @abstractmethod
    def delete_thesis(self, thesis_id: str) -> bool:
        """Delete one thesis."""

    @abstractmethod
    def create_theses(self, theses: List[Thesis]) -> List[Thesis]:
        """Insert many theses in one store transaction."""

    @abstractmethod
    def delete_theses(self, thesis_ids: List[str]) -> int:
        """Delete many theses in one store transaction; missing ids ignored."""

    @abstractmethod
    def get_theses_by_concept(self, concept_id: str) -> List[Thesis]:
        """Batched read."""

    @abstractmethod
    def create_provenance(self, records: List[SynthesisProvenance]) -> List[SynthesisProvenance]:
        """
        Insert provenance records in one store transaction.

        Raises:
            ConflictError: If an element already has a provenance record
        """

    @abstractmethod
    def delete_provenance(self, provenance_ids: List[str]) -> int:
        """Delete provenance records; missing ids ignored."""

    @abstractmethod
    def get_provenance_by_concept(self, concept_id: str) -> List[SynthesisProvenance]:
        """Batched read of the provenance of a synthesized concept."""

    @abstractmethod
    def is_available(self) -> bool:
        """Health check."""

    def get_store_name(self) -> str:
        return type(self).__name__


@dataclass
class Stores:
    """The three adapters a coordinator works against."""
    concepts: ConceptStore
    graphs: GraphStore
    documents: DocumentStore

    def health(self) -> Dict[str, bool]:
        return {
            'relational': self.concepts.is_available(),
            'graph': self.graphs.is_available(),
            'document': self.documents.is_available(),
        }


class StoreFactory:
    """
    Factory for creating the store adapters.

    Supports:
    - Memory mode (safe default, no external services)
    - Postgres + Neo4j + MongoDB mode

    Per config: STORE_BACKEND=memory|postgres
    """

    @staticmethod
    def create_stores(
        backend: str = "memory",
        pool: Any = None,
        neo4j_config: Optional[Dict[str, str]] = None,
        mongo_config: Optional[Dict[str, str]] = None
    ) -> Stores:
        """
        Create the adapters for a backend.

        Args:
            backend: 'memory' or 'postgres'
            pool: psycopg_pool.ConnectionPool (postgres mode)
            neo4j_config: uri, user, password (postgres mode)
            mongo_config: uri, database (postgres mode)

        Raises:
            ValueError: If backend is invalid or postgres mode lacks config
        """
        if backend == "memory":
            from philograph.storage.memory_store import (
                InMemoryConceptStore,
                InMemoryDocumentStore,
                InMemoryGraphStore,
            )

            logger.info("Using in-memory stores")
            return Stores(
                concepts=InMemoryConceptStore(),
                graphs=InMemoryGraphStore(),
                documents=InMemoryDocumentStore(),
            )

        elif backend == "postgres":
            if pool is None or not neo4j_config or not mongo_config:
                raise ValueError("Postgres backend requires a connection pool, Neo4j and MongoDB config")

            from philograph.storage.postgres_store import PostgresConceptStore
            from philograph.storage.mongo_store import MongoDocumentStore
            from philograph.storage.neo4j_store import Neo4jGraphStore

            logger.info("Using Postgres (relational) + Neo4j (graph) + MongoDB (document) stores")
            return Stores(
                concepts=PostgresConceptStore(pool),
                graphs=Neo4jGraphStore.connect(
                    uri=neo4j_config['uri'],
                    user=neo4j_config['user'],
                    password=neo4j_config['password'],
                ),
                documents=MongoDocumentStore.connect(
                    uri=mongo_config['uri'],
                    database=mongo_config['database'],
                ),
            )

        else:
            raise ValueError(f"Invalid backend: {backend}. Must be 'memory' or 'postgres'")
