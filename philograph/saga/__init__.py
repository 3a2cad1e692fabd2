"""
PhiloGraph - Saga Coordinator

Plans of ordered steps with compensations, executed under per-concept locks
with an append-only saga log for auditing and crash recovery.
"""

from philograph.saga.coordinator import CompensationRegistry, SagaCoordinator
from philograph.saga.locks import ConceptLocks, InMemoryConceptLocks, PostgresAdvisoryLocks
from philograph.saga.log import (
    InMemorySagaLog,
    PostgresSagaLog,
    SagaLogEntry,
    SagaLogStore,
    StepStatus,
)
from philograph.saga.plan import (
    CancelToken,
    Plan,
    PlanResult,
    Step,
    StepCategory,
    StepContext,
)
from philograph.saga.retry import RetryPolicy

__all__ = [
    'SagaCoordinator',
    'CompensationRegistry',
    'ConceptLocks',
    'InMemoryConceptLocks',
    'PostgresAdvisoryLocks',
    'SagaLogStore',
    'InMemorySagaLog',
    'PostgresSagaLog',
    'SagaLogEntry',
    'StepStatus',
    'Plan',
    'Step',
    'StepCategory',
    'StepContext',
    'PlanResult',
    'CancelToken',
    'RetryPolicy',
]
