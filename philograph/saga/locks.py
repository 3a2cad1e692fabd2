"""
PhiloGraph - Per-Concept Advisory Locks

Plans touching overlapping concept ids are serialized for their whole
duration, compensation included. Ids are locked in sorted order so two plans
can never wait on each other.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Iterator, List
from contextlib import contextmanager
import logging
import threading

from philograph.storage.postgres_store import translate_errors

logger = logging.getLogger(__name__)


def lock_order(concept_ids: Iterable[str]) -> List[str]:
    return sorted({concept_id for concept_id in concept_ids if concept_id})


class ConceptLocks(ABC):

    @abstractmethod
    @contextmanager
    def hold(self, concept_ids: Iterable[str]) -> Iterator[None]:
        """Hold every lock for the duration of the with-block."""


class InMemoryConceptLocks(ConceptLocks):
    """One threading.Lock per concept id (single process)."""

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, concept_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(concept_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[concept_id] = lock
            return lock

    @contextmanager
    def hold(self, concept_ids: Iterable[str]) -> Iterator[None]:
        acquired: List[threading.Lock] = []
        try:
            for concept_id in lock_order(concept_ids):
                lock = self._lock_for(concept_id)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def is_locked(self, concept_id: str) -> bool:
        return self._lock_for(concept_id).locked()


class PostgresAdvisoryLocks(ConceptLocks):
    """
    Session-level pg_advisory_lock(hashtext(concept_id)).

    One pooled connection is held (in autocommit) for the whole plan; the
    locks belong to that session.
    """

    def __init__(self, pool: Any):
        """
        Args:
            pool: psycopg_pool.ConnectionPool
        """
        self.pool = pool

    @contextmanager
    def hold(self, concept_ids: Iterable[str]) -> Iterator[None]:
        ordered = lock_order(concept_ids)
        if not ordered:
            yield
            return

        with self.pool.connection() as conn:
            conn.autocommit = True
            acquired: List[str] = []
            try:
                with translate_errors("acquire concept locks"):
                    # Lock waits last as long as the plan holding the lock
                    conn.execute("SET statement_timeout = 0")
                    for concept_id in ordered:
                        conn.execute("SELECT pg_advisory_lock(hashtext(%s))", (concept_id,))
                        acquired.append(concept_id)
                logger.debug(f"Acquired advisory locks: {acquired}")
                yield
            finally:
                for concept_id in reversed(acquired):
                    try:
                        conn.execute("SELECT pg_advisory_unlock(hashtext(%s))", (concept_id,))
                    except Exception as e:
                        # Locks die with the session; the pool discards broken connections
                        logger.error(f"Failed to release advisory lock {concept_id}: {e}")
                try:
                    conn.execute("RESET statement_timeout")
                except Exception as e:
                    logger.error(f"Failed to reset statement_timeout: {e}")
                conn.autocommit = False
