"""
PhiloGraph - Neo4jGraphStore

Graph store adapter: Categories are (:Category) nodes, Relationships are
[:RELATED_TO] edges carrying their own id and attributes.

    (:Category {category_id, concept_id, name, definition,
                centrality, certainty, historical_significance})
    -[:RELATED_TO {relationship_id, concept_id, type, direction,
                   strength, certainty}]->
    (:Category)

Store invariant enforced here: an edge only connects categories of the same
concept (ConflictError otherwise).

Batch operations (create_graph, delete_graph_elements) run inside a single
write transaction.
"""

from typing import Any, Dict, Iterator, List, Optional
from contextlib import contextmanager
from dataclasses import replace
import logging

from neo4j import GraphDatabase
from neo4j.exceptions import (
    ConstraintError,
    ServiceUnavailable,
    SessionExpired,
    TransientError,
)

from philograph.core.errors import ConflictError, NotFoundError, UnavailableError
from philograph.core.models import (
    Category,
    ConceptGraph,
    Relationship,
    RelationshipDirection,
    new_id,
)
from philograph.storage.base import GraphStore
from philograph.storage.memory_store import (
    CATEGORY_MUTABLE_FIELDS,
    RELATIONSHIP_MUTABLE_FIELDS,
)

logger = logging.getLogger(__name__)


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Translate neo4j driver errors into coordinator error kinds."""
    try:
        yield
    except ConstraintError as e:
        logger.warning(f"{operation}: constraint violation: {e}")
        raise ConflictError(f"{operation}: {e}") from e
    except (ServiceUnavailable, SessionExpired, TransientError) as e:
        logger.error(f"{operation}: graph store unavailable: {e}")
        raise UnavailableError(f"{operation}: graph store unavailable") from e


def _node_to_category(node: Any) -> Category:
    return Category(
        id=node['category_id'],
        concept_id=node['concept_id'],
        name=node['name'],
        definition=node.get('definition') or "",
        centrality=node['centrality'],
        certainty=node['certainty'],
        historical_significance=node['historical_significance'],
    )


def _record_to_relationship(record: Any) -> Relationship:
    rel = record['r']
    return Relationship(
        id=rel['relationship_id'],
        concept_id=rel['concept_id'],
        source_category_id=record['source_id'],
        target_category_id=record['target_id'],
        type=rel['type'],
        direction=RelationshipDirection(rel['direction']),
        strength=rel['strength'],
        certainty=rel['certainty'],
    )


def _category_props(category: Category) -> Dict[str, Any]:
    return {
        'category_id': category.id,
        'concept_id': category.concept_id,
        'name': category.name,
        'definition': category.definition,
        'centrality': category.centrality,
        'certainty': category.certainty,
        'historical_significance': category.historical_significance,
    }


RELATIONSHIP_RETURN = """
    RETURN r, source.category_id AS source_id, target.category_id AS target_id
"""


def _create_category_tx(tx: Any, category: Category) -> Category:
    record = tx.run("""
        CREATE (c:Category)
        SET c = $props
        RETURN c
    """, props=_category_props(category)).single()
    return _node_to_category(record['c'])


def _create_relationship_tx(tx: Any, relationship: Relationship) -> Relationship:
    endpoints = tx.run("""
        OPTIONAL MATCH (source:Category {category_id: $source_id})
        OPTIONAL MATCH (target:Category {category_id: $target_id})
        RETURN source.concept_id AS source_concept, target.concept_id AS target_concept
    """, source_id=relationship.source_category_id,
        target_id=relationship.target_category_id).single()

    if endpoints['source_concept'] is None or endpoints['target_concept'] is None:
        raise NotFoundError(
            f"Relationship endpoints not found: "
            f"{relationship.source_category_id} -> {relationship.target_category_id}"
        )

    if endpoints['source_concept'] != endpoints['target_concept']:
        raise ConflictError(
            f"Relationship endpoints belong to different concepts "
            f"({endpoints['source_concept']} -> {endpoints['target_concept']})"
        )

    record = tx.run(f"""
        MATCH (source:Category {{category_id: $source_id}})
        MATCH (target:Category {{category_id: $target_id}})
        CREATE (source)-[r:RELATED_TO {{
            relationship_id: $relationship_id,
            concept_id: $concept_id,
            type: $type,
            direction: $direction,
            strength: $strength,
            certainty: $certainty
        }}]->(target)
        {RELATIONSHIP_RETURN}
    """,
        source_id=relationship.source_category_id,
        target_id=relationship.target_category_id,
        relationship_id=relationship.id,
        concept_id=endpoints['source_concept'],
        type=relationship.type,
        direction=RelationshipDirection(relationship.direction).value,
        strength=relationship.strength,
        certainty=relationship.certainty,
    ).single()
    return _record_to_relationship(record)


class Neo4jGraphStore(GraphStore):
    """
    Neo4j-backed GraphStore.

    Requires a uniqueness constraint on Category.category_id (see
    ensure_constraints) so duplicate ids surface as ConflictError.
    """

    def __init__(self, driver: Any, database: Optional[str] = None):
        """
        Args:
            driver: neo4j.Driver
            database: Optional database name (default database if None)
        """
        self.driver = driver
        self.database = database
        logger.debug("Neo4jGraphStore initialized")

    @classmethod
    def connect(cls, uri: str, user: str, password: str, timeout: float = 10.0) -> 'Neo4jGraphStore':
        """timeout (seconds) bounds connection, pool acquisition and write retries."""
        driver = GraphDatabase.driver(
            uri,
            auth=(user, password),
            connection_timeout=timeout,
            connection_acquisition_timeout=timeout,
            max_transaction_retry_time=timeout,
        )
        return cls(driver)

    def close(self) -> None:
        self.driver.close()

    def _session(self) -> Any:
        return self.driver.session(database=self.database)

    def ensure_constraints(self) -> None:
        with translate_errors("ensure constraints"):
            with self._session() as session:
                session.run("""
                    CREATE CONSTRAINT category_id_unique IF NOT EXISTS
                    FOR (c:Category) REQUIRE c.category_id IS UNIQUE
                """)
                session.run("""
                    CREATE INDEX category_concept IF NOT EXISTS
                    FOR (c:Category) ON (c.concept_id)
                """)

    # Categories

    def create_category(self, category: Category) -> Category:
        category = replace(category, id=category.id or new_id())
        with translate_errors(f"create category {category.id}"):
            with self._session() as session:
                return session.execute_write(_create_category_tx, category)

    def get_category(self, category_id: str) -> Optional[Category]:
        with translate_errors(f"get category {category_id}"):
            with self._session() as session:
                record = session.run(
                    "MATCH (c:Category {category_id: $category_id}) RETURN c",
                    category_id=category_id
                ).single()

        return _node_to_category(record['c']) if record else None

    def update_category(self, category_id: str, changes: Dict[str, Any]) -> Category:
        unknown = set(changes) - CATEGORY_MUTABLE_FIELDS
        if unknown:
            raise ConflictError(f"Cannot update category fields: {sorted(unknown)}")

        with translate_errors(f"update category {category_id}"):
            with self._session() as session:
                record = session.run("""
                    MATCH (c:Category {category_id: $category_id})
                    SET c += $changes
                    RETURN c
                """, category_id=category_id, changes=dict(changes)).single()

        if record is None:
            raise NotFoundError(f"Category {category_id} not found")
        return _node_to_category(record['c'])

    def delete_category(self, category_id: str) -> bool:
        with translate_errors(f"delete category {category_id}"):
            with self._session() as session:
                record = session.run("""
                    MATCH (c:Category {category_id: $category_id})
                    DETACH DELETE c
                    RETURN count(*) AS deleted
                """, category_id=category_id).single()

        return bool(record and record['deleted'])

    # Relationships

    def create_relationship(self, relationship: Relationship) -> Relationship:
        relationship = replace(relationship, id=relationship.id or new_id())
        with translate_errors(f"create relationship {relationship.id}"):
            with self._session() as session:
                return session.execute_write(_create_relationship_tx, relationship)

    def get_relationship(self, relationship_id: str) -> Optional[Relationship]:
        with translate_errors(f"get relationship {relationship_id}"):
            with self._session() as session:
                record = session.run(f"""
                    MATCH (source:Category)-[r:RELATED_TO {{relationship_id: $relationship_id}}]->(target:Category)
                    {RELATIONSHIP_RETURN}
                """, relationship_id=relationship_id).single()

        return _record_to_relationship(record) if record else None

    def update_relationship(self, relationship_id: str, changes: Dict[str, Any]) -> Relationship:
        unknown = set(changes) - RELATIONSHIP_MUTABLE_FIELDS
        if unknown:
            raise ConflictError(f"Cannot update relationship fields: {sorted(unknown)}")

        values = dict(changes)
        if 'direction' in values:
            values['direction'] = RelationshipDirection(values['direction']).value

        with translate_errors(f"update relationship {relationship_id}"):
            with self._session() as session:
                record = session.run(f"""
                    MATCH (source:Category)-[r:RELATED_TO {{relationship_id: $relationship_id}}]->(target:Category)
                    SET r += $changes
                    {RELATIONSHIP_RETURN}
                """, relationship_id=relationship_id, changes=values).single()

        if record is None:
            raise NotFoundError(f"Relationship {relationship_id} not found")
        return _record_to_relationship(record)

    def delete_relationship(self, relationship_id: str) -> bool:
        with translate_errors(f"delete relationship {relationship_id}"):
            with self._session() as session:
                record = session.run("""
                    MATCH ()-[r:RELATED_TO {relationship_id: $relationship_id}]->()
                    DELETE r
                    RETURN count(*) AS deleted
                """, relationship_id=relationship_id).single()

        return bool(record and record['deleted'])

    # Batched

    def get_categories_by_concept(self, concept_id: str) -> List[Category]:
        with translate_errors(f"get categories of {concept_id}"):
            with self._session() as session:
                result = session.run("""
                    MATCH (c:Category {concept_id: $concept_id})
                    RETURN c
                    ORDER BY c.name
                """, concept_id=concept_id)
                return [_node_to_category(record['c']) for record in result]

    def get_relationships_by_concept(self, concept_id: str) -> List[Relationship]:
        with translate_errors(f"get relationships of {concept_id}"):
            with self._session() as session:
                result = session.run(f"""
                    MATCH (source:Category)-[r:RELATED_TO {{concept_id: $concept_id}}]->(target:Category)
                    {RELATIONSHIP_RETURN}
                """, concept_id=concept_id)
                return [_record_to_relationship(record) for record in result]

    def create_graph(self, graph: ConceptGraph) -> ConceptGraph:
        categories = [replace(c, id=c.id or new_id()) for c in graph.categories]
        relationships = [replace(r, id=r.id or new_id()) for r in graph.relationships]

        def _create_graph_tx(tx: Any) -> ConceptGraph:
            created_categories = [_create_category_tx(tx, c) for c in categories]
            created_relationships = [_create_relationship_tx(tx, r) for r in relationships]
            return ConceptGraph(
                concept_id=graph.concept_id,
                categories=created_categories,
                relationships=created_relationships,
            )

        with translate_errors(f"create graph of {graph.concept_id}"):
            with self._session() as session:
                created = session.execute_write(_create_graph_tx)

        logger.debug(
            f"Created graph of {graph.concept_id}: "
            f"{len(created.categories)} categories, {len(created.relationships)} relationships"
        )
        return created

    def delete_graph_elements(self, category_ids: List[str], relationship_ids: List[str]) -> int:
        def _delete_tx(tx: Any) -> int:
            rel_record = tx.run("""
                MATCH ()-[r:RELATED_TO]->()
                WHERE r.relationship_id IN $relationship_ids
                DELETE r
                RETURN count(r) AS deleted
            """, relationship_ids=list(relationship_ids)).single()
            cat_record = tx.run("""
                MATCH (c:Category)
                WHERE c.category_id IN $category_ids
                DETACH DELETE c
                RETURN count(c) AS deleted
            """, category_ids=list(category_ids)).single()
            return rel_record['deleted'] + cat_record['deleted']

        with translate_errors("delete graph elements"):
            with self._session() as session:
                return session.execute_write(_delete_tx)

    def is_available(self) -> bool:
        try:
            self.driver.verify_connectivity()
            return True
        except Exception as e:
            logger.error(f"Neo4j health check failed: {e}")
            return False

    def get_store_name(self) -> str:
        return 'neo4j'
