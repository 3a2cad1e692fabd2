"""
PhiloGraph - Plan Submission Service

Boundary exposed to the API layer:
- submit_plan(kind, args) -> plan_id          synchronous, raises PlanFailedError
- submit_plan_async(kind, args) -> plan_id    returns immediately
- get_plan_status(plan_id) -> PlanStatusView  poll
- cancel_plan(plan_id) -> bool

STATUS LIFECYCLE:
queued -> processing -> completed | failed | canceled

Asynchronous plans run on a ThreadPoolExecutor; the status store is the
only place async callers learn the outcome.
"""

from typing import Any, Dict, List, Optional
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
import threading

import structlog

from philograph.config import PhiloGraphConfig
from philograph.core.cache import CacheInvalidator, InMemoryCache, PostgresCache
from philograph.core.errors import (
    NotFoundError,
    PlanCancelledError,
    PlanFailedError,
)
from philograph.core.models import utcnow
from philograph.plans.builders import PlanBuilder, PlanDependencies
from philograph.plans.projections import ProjectionReader
from philograph.reasoning.breaker import CircuitBreaker
from philograph.reasoning.client import HttpReasoningTransport, ReasoningTransport
from philograph.reasoning.gateway import ReasoningGateway
from philograph.saga.coordinator import SagaCoordinator
from philograph.saga.locks import InMemoryConceptLocks, PostgresAdvisoryLocks
from philograph.saga.log import InMemorySagaLog, PostgresSagaLog
from philograph.saga.plan import CancelToken, Plan, PlanResult
from philograph.saga.retry import RetryPolicy
from philograph.storage.base import StoreFactory, Stores
from philograph.transform.engine import TransformEngine

logger = structlog.get_logger(__name__)


class PlanStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = (PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELED)


@dataclass
class PlanStatusView:
    plan_id: str
    kind: str
    status: PlanStatus
    result: Any = None
    error: Optional[Dict[str, Any]] = None
    submitted_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'plan_id': self.plan_id,
            'kind': self.kind,
            'status': self.status.value,
            'result': self.result,
            'error': self.error,
            'submitted_at': self.submitted_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }


def error_view(error: PlanFailedError) -> Dict[str, Any]:
    """Failure detail shared by sync callers and status pollers."""
    return {
        'step': error.step_name,
        'kind': error.kind.value,
        'message': error.user_message(),
        'fully_compensated': error.fully_compensated,
        'compensation_errors': [str(e) for e in error.compensation_errors],
    }


class PlanStatusStore:
    """Lock-guarded, process-local status records."""

    def __init__(self):
        self._views: Dict[str, PlanStatusView] = {}
        self._lock = threading.Lock()

    def create(self, plan_id: str, kind: str) -> PlanStatusView:
        view = PlanStatusView(plan_id=plan_id, kind=kind, status=PlanStatus.QUEUED)
        with self._lock:
            self._views[plan_id] = view
        return view

    def update(self, plan_id: str, status: PlanStatus, **changes: Any) -> PlanStatusView:
        with self._lock:
            view = replace(self._views[plan_id], status=status, updated_at=utcnow(), **changes)
            self._views[plan_id] = view
            return view

    def get(self, plan_id: str) -> Optional[PlanStatusView]:
        with self._lock:
            return self._views.get(plan_id)


class PlanService:
    """
    Builds plans, runs them on the coordinator and tracks their status.

    Usage:
        service = PlanService.from_config(get_config(), pool)
        plan_id = service.submit_plan_async('synthesize', {...})
        service.get_plan_status(plan_id).status
    """

    def __init__(
        self,
        builder: PlanBuilder,
        coordinator: SagaCoordinator,
        max_workers: int = 4,
        status_store: Optional[PlanStatusStore] = None
    ):
        self.builder = builder
        self.coordinator = coordinator
        self.status_store = status_store or PlanStatusStore()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="plan")
        self._tokens: Dict[str, CancelToken] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()

    @property
    def stores(self) -> Stores:
        return self.builder.stores

    @classmethod
    def from_config(
        cls,
        config: PhiloGraphConfig,
        pool: Any = None,
        transport: Optional[ReasoningTransport] = None
    ) -> 'PlanService':
        """
        Wire stores, gateway, engine and coordinator for a configuration.

        Args:
            config: Application configuration
            pool: psycopg_pool.ConnectionPool (postgres backend)
            transport: Reasoning transport override (defaults to HTTP)
        """
        if config.backend == 'postgres':
            stores = StoreFactory.create_stores(
                'postgres',
                pool=pool,
                neo4j_config={
                    'uri': config.graph.neo4j_uri,
                    'user': config.graph.neo4j_user,
                    'password': config.graph.neo4j_password,
                },
                mongo_config={
                    'uri': config.documents.mongodb_uri,
                    'database': config.documents.mongodb_database,
                },
            )
            cache = PostgresCache(pool)
            saga_log = PostgresSagaLog(pool)
            locks = PostgresAdvisoryLocks(pool)
        else:
            stores = StoreFactory.create_stores('memory')
            cache = InMemoryCache()
            saga_log = InMemorySagaLog()
            locks = InMemoryConceptLocks()

        reasoning = config.reasoning
        gateway = ReasoningGateway(
            transport or HttpReasoningTransport(
                reasoning.base_url,
                api_key=reasoning.api_key,
                timeout=reasoning.timeout,
            ),
            cache,
            CircuitBreaker(
                failure_threshold=reasoning.failure_threshold,
                reset_timeout=reasoning.reset_timeout,
                failure_window=reasoning.failure_window,
            ),
            cache_ttl=reasoning.cache_ttl,
        )

        builder = PlanBuilder(PlanDependencies(
            stores=stores,
            engine=TransformEngine(gateway),
            projections=ProjectionReader(stores, cache),
        ))

        saga = config.saga
        coordinator = SagaCoordinator(
            saga_log,
            locks,
            CacheInvalidator(cache),
            registry=builder.compensation_registry(),
            retry_policy=RetryPolicy(
                max_retries=saga.max_retries,
                backoff_base=saga.backoff_base,
                backoff_max=saga.backoff_max,
            ),
            store_step_timeout=saga.store_step_timeout,
            reasoning_step_timeout=saga.reasoning_step_timeout,
            orphan_after=saga.orphan_after,
        )

        return cls(builder, coordinator, max_workers=saga.plan_workers)

    # Submission

    def _prepare(self, kind: str, args: Dict[str, Any], deadline_seconds: Optional[float]) -> Plan:
        plan = self.builder.build(kind, args)
        self.status_store.create(plan.plan_id, plan.kind)
        with self._lock:
            self._tokens[plan.plan_id] = CancelToken(deadline_seconds=deadline_seconds)
        logger.info("plan.submitted", plan_id=plan.plan_id, kind=kind)
        return plan

    def _run(self, plan: Plan) -> PlanResult:
        with self._lock:
            token = self._tokens.get(plan.plan_id)

        self.status_store.update(plan.plan_id, PlanStatus.PROCESSING)
        try:
            try:
                result = self.coordinator.execute(plan, token)
            except PlanFailedError:
                raise
            except Exception as e:
                # Failed before any step ran (lock or saga log unavailable)
                raise PlanFailedError(plan.plan_id, "start", e) from e
        except PlanFailedError as e:
            status = PlanStatus.CANCELED if isinstance(e.cause, PlanCancelledError) else PlanStatus.FAILED
            self.status_store.update(plan.plan_id, status, error=error_view(e))
            logger.warning("plan.finished", plan_id=plan.plan_id, status=status.value, step=e.step_name)
            raise
        finally:
            with self._lock:
                self._tokens.pop(plan.plan_id, None)

        self.status_store.update(plan.plan_id, PlanStatus.COMPLETED, result=result.output)
        logger.info("plan.finished", plan_id=plan.plan_id, status=PlanStatus.COMPLETED.value)
        return result

    def submit_plan(self, kind: str, args: Dict[str, Any], deadline_seconds: Optional[float] = None) -> str:
        """
        Run a plan to completion on the caller's thread.

        Returns:
            plan_id (the result is available via get_plan_status)

        Raises:
            ValidationFailedError: Invalid kind or arguments (no plan created)
            PlanFailedError: A step failed; carries plan_id and failing step
        """
        plan = self._prepare(kind, args, deadline_seconds)
        self._run(plan)
        return plan.plan_id

    def submit_plan_async(self, kind: str, args: Dict[str, Any], deadline_seconds: Optional[float] = None) -> str:
        """
        Queue a plan and return immediately.

        Raises:
            ValidationFailedError: Invalid kind or arguments (no plan created)
        """
        plan = self._prepare(kind, args, deadline_seconds)
        future = self._executor.submit(self._run, plan)
        with self._lock:
            self._futures[plan.plan_id] = future
        return plan.plan_id

    # Polling

    def get_plan_status(self, plan_id: str) -> PlanStatusView:
        """
        Raises:
            NotFoundError: Unknown plan id
        """
        view = self.status_store.get(plan_id)
        if view is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        return view

    def wait(self, plan_id: str, timeout: Optional[float] = None) -> PlanStatusView:
        """Block until an asynchronous plan finishes and return its status."""
        with self._lock:
            future = self._futures.get(plan_id)
        if future is not None:
            # Outcome is recorded in the status store
            future.exception(timeout=timeout)
        return self.get_plan_status(plan_id)

    def cancel_plan(self, plan_id: str) -> bool:
        """
        Request cancellation. Steps already committed are compensated.

        Returns:
            True if the plan was still running or queued
        """
        view = self.get_plan_status(plan_id)
        if view.is_terminal:
            return False

        with self._lock:
            token = self._tokens.get(plan_id)
        if token is None:
            return False

        token.cancel("Plan cancelled by request")
        logger.info("plan.cancel_requested", plan_id=plan_id)
        return True

    # Operations

    def recover(self) -> List[str]:
        return self.coordinator.recover()

    def health(self) -> Dict[str, bool]:
        return self.stores.health()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        self.coordinator.shutdown()
