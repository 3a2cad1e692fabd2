"""
PhiloGraph - PostgresConceptStore

Relational store adapter: Concept metadata lives in the `concept` table
(db/migrations/001_core_schema.sql).

RESPONSIBILITIES:
- Create/get/update concepts, status transitions (archive = soft delete)
- Hard delete ONLY for saga compensation of a creation
- Map driver errors onto the coordinator taxonomy:
  - UniqueViolation / IntegrityError -> ConflictError
  - OperationalError / PoolTimeout   -> UnavailableError
"""

from typing import Any, Dict, Iterator, List, Optional
from contextlib import contextmanager
import logging

import psycopg
from psycopg_pool import PoolTimeout

from philograph.core.errors import ConflictError, NotFoundError, UnavailableError
from philograph.core.models import Concept, ConceptStatus, new_id
from philograph.storage.base import ConceptStore

logger = logging.getLogger(__name__)

CONCEPT_COLUMNS = """
    concept_id,
    name,
    description,
    status,
    is_synthesis,
    parent_concept_ids,
    synthesis_method,
    focus,
    innovation_degree,
    created_at,
    last_modified
"""

# Column whitelist for dynamic UPDATE statements
CONCEPT_UPDATABLE = (
    'name', 'description', 'status', 'is_synthesis', 'parent_concept_ids',
    'synthesis_method', 'focus', 'innovation_degree',
)


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """
    Translate psycopg errors into coordinator error kinds.

    Args:
        operation: Human-readable operation name for messages
    """
    try:
        yield
    except psycopg.errors.IntegrityError as e:
        logger.warning(f"{operation}: integrity violation: {e}")
        raise ConflictError(f"{operation}: {e}") from e
    except (psycopg.OperationalError, PoolTimeout) as e:
        logger.error(f"{operation}: database unavailable: {e}")
        raise UnavailableError(f"{operation}: database unavailable") from e


def _row_to_concept(row: Any) -> Concept:
    return Concept(
        id=row[0],
        name=row[1],
        description=row[2] or "",
        status=ConceptStatus(row[3]),
        is_synthesis=row[4],
        parent_concept_ids=list(row[5] or []),
        synthesis_method=row[6],
        focus=row[7],
        innovation_degree=row[8],
        created_at=row[9],
        last_modified=row[10],
    )


class PostgresConceptStore(ConceptStore):
    """
    Postgres-based ConceptStore (authoritative for concept lifecycle).
    """

    def __init__(self, pool: Any):
        """
        Initialize Postgres store.

        Args:
            pool: psycopg_pool.ConnectionPool
        """
        self.pool = pool
        logger.debug("PostgresConceptStore initialized")

    def create_concept(self, concept: Concept) -> Concept:
        concept_id = concept.id or new_id()

        with translate_errors(f"create concept {concept_id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"""
                        INSERT INTO concept (
                            concept_id, name, description, status, is_synthesis,
                            parent_concept_ids, synthesis_method, focus, innovation_degree
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING {CONCEPT_COLUMNS}
                    """, (
                        concept_id,
                        concept.name,
                        concept.description,
                        ConceptStatus(concept.status).value,
                        concept.is_synthesis,
                        list(concept.parent_concept_ids),
                        concept.synthesis_method,
                        concept.focus,
                        concept.innovation_degree,
                    ))
                    row = cur.fetchone()

        logger.debug(f"Created concept {concept_id}")
        return _row_to_concept(row)

    def get_concept(self, concept_id: str) -> Optional[Concept]:
        with translate_errors(f"get concept {concept_id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"""
                        SELECT {CONCEPT_COLUMNS}
                        FROM concept
                        WHERE concept_id = %s
                    """, (concept_id,))
                    row = cur.fetchone()

        if not row:
            return None
        return _row_to_concept(row)

    def get_concepts(self, concept_ids: List[str]) -> List[Concept]:
        if not concept_ids:
            return []

        with translate_errors("get concepts"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"""
                        SELECT {CONCEPT_COLUMNS}
                        FROM concept
                        WHERE concept_id = ANY(%s)
                    """, (list(concept_ids),))
                    rows = cur.fetchall()

        by_id = {row[0]: _row_to_concept(row) for row in rows}
        return [by_id[concept_id] for concept_id in concept_ids if concept_id in by_id]

    def update_concept(self, concept_id: str, changes: Dict[str, Any]) -> Concept:
        unknown = set(changes) - set(CONCEPT_UPDATABLE)
        if unknown:
            raise ConflictError(f"Cannot update concept fields: {sorted(unknown)}")

        values = dict(changes)
        if 'status' in values:
            values['status'] = ConceptStatus(values['status']).value
        if 'parent_concept_ids' in values:
            values['parent_concept_ids'] = list(values['parent_concept_ids'])

        assignments = ", ".join(f"{column} = %s" for column in values)
        set_clause = f"{assignments}, last_modified = NOW()" if assignments else "last_modified = NOW()"

        with translate_errors(f"update concept {concept_id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"""
                        UPDATE concept
                        SET {set_clause}
                        WHERE concept_id = %s
                        RETURNING {CONCEPT_COLUMNS}
                    """, (*values.values(), concept_id))
                    row = cur.fetchone()

        if not row:
            raise NotFoundError(f"Concept {concept_id} not found")
        return _row_to_concept(row)

    def set_status(self, concept_id: str, status: ConceptStatus) -> Concept:
        return self.update_concept(concept_id, {'status': status})

    def delete_concept(self, concept_id: str) -> bool:
        with translate_errors(f"delete concept {concept_id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM concept WHERE concept_id = %s", (concept_id,))
                    deleted = cur.rowcount > 0

        if deleted:
            logger.debug(f"Deleted concept {concept_id}")
        return deleted

    def is_available(self) -> bool:
        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            return True
        except Exception as e:
            logger.error(f"Postgres health check failed: {e}")
            return False

    def get_store_name(self) -> str:
        return 'postgres'
