"""
PhiloGraph - Saga Log

Append-only record of plan execution, keyed by (plan_id, step_index). The
newest entry for a key wins. Used for auditing and crash recovery.

Entry layout:
- step_index -1, step_kind "plan": plan header (pending at start, terminal
  status at the end; payload carries kind and concept_ids)
- step_index 0..n-1: one key per step (pending -> committed | failed,
  committed -> compensated)

A plan whose latest header is still pending did not finish: recovery
compensates it.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import logging
import threading

from psycopg.types.json import Json

from philograph.core.hashing import payload_hash
from philograph.core.models import utcnow
from philograph.storage.postgres_store import translate_errors

logger = logging.getLogger(__name__)

PLAN_HEADER_INDEX = -1
PLAN_STEP_KIND = "plan"


class StepStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    COMPENSATED = "compensated"
    FAILED = "failed"


@dataclass
class SagaLogEntry:
    plan_id: str
    step_index: int
    step_name: str
    step_kind: str
    status: StepStatus
    payload: Dict[str, Any] = field(default_factory=dict)
    payload_hash: str = ""
    recorded_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = StepStatus(self.status)
        if not self.payload_hash:
            self.payload_hash = payload_hash(self.payload)
        if self.recorded_at is None:
            self.recorded_at = utcnow()

    @property
    def is_header(self) -> bool:
        return self.step_index == PLAN_HEADER_INDEX

    def to_dict(self) -> Dict[str, Any]:
        return {
            'plan_id': self.plan_id,
            'step_index': self.step_index,
            'step_name': self.step_name,
            'step_kind': self.step_kind,
            'status': self.status.value,
            'payload_hash': self.payload_hash,
            'payload': self.payload,
            'recorded_at': self.recorded_at.isoformat() if self.recorded_at else None,
        }


class SagaLogStore(ABC):
    """Persistence for SagaLog entries."""

    @abstractmethod
    def append(self, entry: SagaLogEntry) -> None:
        """Append one entry (never updates in place)."""

    @abstractmethod
    def entries(self, plan_id: str) -> List[SagaLogEntry]:
        """Every entry of a plan in append order."""

    @abstractmethod
    def open_plan_ids(self) -> List[str]:
        """Plans whose latest header entry is pending."""

    def latest(self, plan_id: str) -> Dict[int, SagaLogEntry]:
        """Newest entry per step index."""
        latest: Dict[int, SagaLogEntry] = {}
        for entry in self.entries(plan_id):
            latest[entry.step_index] = entry
        return latest

    def step_statuses(self, plan_id: str) -> Dict[str, StepStatus]:
        """Latest status per step name (header excluded)."""
        return {
            entry.step_name: entry.status
            for index, entry in sorted(self.latest(plan_id).items())
            if index != PLAN_HEADER_INDEX
        }


class InMemorySagaLog(SagaLogStore):

    def __init__(self):
        self._entries: List[SagaLogEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: SagaLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self, plan_id: str) -> List[SagaLogEntry]:
        with self._lock:
            return [e for e in self._entries if e.plan_id == plan_id]

    def open_plan_ids(self) -> List[str]:
        with self._lock:
            headers: Dict[str, SagaLogEntry] = {}
            for entry in self._entries:
                if entry.is_header:
                    headers[entry.plan_id] = entry
        return [
            plan_id for plan_id, header in headers.items()
            if header.status == StepStatus.PENDING
        ]

    def all_entries(self) -> List[SagaLogEntry]:
        with self._lock:
            return list(self._entries)


class PostgresSagaLog(SagaLogStore):
    """
    SagaLog on the saga_log table (db/migrations/001_core_schema.sql).

    entry_id BIGSERIAL orders entries; "newest wins" is resolved by it.
    """

    def __init__(self, pool: Any):
        """
        Args:
            pool: psycopg_pool.ConnectionPool
        """
        self.pool = pool

    def append(self, entry: SagaLogEntry) -> None:
        with translate_errors(f"append saga log {entry.plan_id}/{entry.step_index}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO saga_log (
                            plan_id, step_index, step_name, step_kind,
                            status, payload_hash, payload, recorded_at
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """, (
                        entry.plan_id,
                        entry.step_index,
                        entry.step_name,
                        entry.step_kind,
                        entry.status.value,
                        entry.payload_hash,
                        Json(entry.payload),
                        entry.recorded_at,
                    ))

    def entries(self, plan_id: str) -> List[SagaLogEntry]:
        with translate_errors(f"read saga log {plan_id}"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        SELECT plan_id, step_index, step_name, step_kind,
                               status, payload, payload_hash, recorded_at
                        FROM saga_log
                        WHERE plan_id = %s
                        ORDER BY entry_id
                    """, (plan_id,))
                    rows = cur.fetchall()

        return [SagaLogEntry(*row) for row in rows]

    def open_plan_ids(self) -> List[str]:
        with translate_errors("find open plans"):
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        SELECT plan_id FROM (
                            SELECT DISTINCT ON (plan_id) plan_id, status, entry_id
                            FROM saga_log
                            WHERE step_index = %s
                            ORDER BY plan_id, entry_id DESC
                        ) headers
                        WHERE status = %s
                        ORDER BY entry_id
                    """, (PLAN_HEADER_INDEX, StepStatus.PENDING.value))
                    rows = cur.fetchall()

        return [row[0] for row in rows]
